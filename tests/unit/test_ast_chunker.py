"""Unit tests for the AST chunker.

Most tests drive the chunker through a scripted SyntaxParser so the chunking
rules are exercised without any grammar installed. The tree-sitter tests run
only when tree-sitter-language-pack is available.
"""

from __future__ import annotations

import pytest

from codescout.knowledge.ast_chunker import (
    ASTChunker,
    SyntaxNode,
    TreeSitterParser,
)
from codescout.knowledge.chunker import smart_chunk


def _has_tree_sitter() -> bool:
    """Check if tree-sitter-language-pack is installed."""
    try:
        import tree_sitter_language_pack  # noqa: F401

        return True
    except ImportError:
        return False


requires_tree_sitter = pytest.mark.skipif(
    not _has_tree_sitter(), reason="tree-sitter-language-pack not installed"
)


class ScriptedParser:
    """SyntaxParser returning fixed nodes (or raising) and recording calls."""

    def __init__(self, nodes=None, error: Exception | None = None):
        self.nodes = nodes
        self.error = error
        self.calls: list[str] = []

    def parse(self, content, language, node_types):
        self.calls.append(language)
        if self.error is not None:
            raise self.error
        return self.nodes


TWO_FUNCTIONS = """def alpha(x):
    y = x + 1
    return y

def beta(x):
    z = x * 2
    return z"""


class TestLanguageDetection:
    """Tests for extension to grammar mapping."""

    @pytest.mark.parametrize(
        "path,language",
        [
            ("app.js", "javascript"),
            ("app.tsx", "tsx"),
            ("lib.h", "c"),
            ("lib.hpp", "cpp"),
            ("main.rs", "rust"),
            ("Model.PY", "python"),
        ],
    )
    def test_supported(self, path, language):
        assert ASTChunker.get_language_for_file(path) == language

    def test_unsupported(self):
        assert ASTChunker.get_language_for_file("README.md") is None


class TestASTChunking:
    """Tests for node-based chunk extraction."""

    def test_one_chunk_per_node(self):
        parser = ScriptedParser(
            [
                SyntaxNode("function_definition", 0, 2),
                SyntaxNode("function_definition", 4, 6),
            ]
        )
        chunks = ASTChunker(parser=parser).chunk(TWO_FUNCTIONS, "funcs.py")

        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 3), (5, 7)]
        assert all(c.node_type == "function_definition" for c in chunks)
        assert chunks[0].text == "def alpha(x):\n    y = x + 1\n    return y"
        assert parser.calls == ["python"]

    def test_short_nodes_are_skipped(self):
        parser = ScriptedParser(
            [
                SyntaxNode("function_definition", 0, 2),
                SyntaxNode("function_definition", 4, 5),
            ]
        )
        chunks = ASTChunker(parser=parser).chunk(TWO_FUNCTIONS, "funcs.py")

        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 3)]

    def test_nested_nodes_are_merged(self):
        content = "\n".join(f"line {n} of a class body" for n in range(12))
        parser = ScriptedParser(
            [
                SyntaxNode("class_definition", 0, 10),
                SyntaxNode("function_definition", 2, 5),
            ]
        )
        chunks = ASTChunker(parser=parser).chunk(content, "model.py")

        assert len(chunks) == 1
        assert (chunks[0].start_line, chunks[0].end_line) == (1, 11)

    def test_overlapping_nodes_are_extended(self):
        content = "\n".join(f"line {n} of some module" for n in range(12))
        parser = ScriptedParser(
            [
                SyntaxNode("function_definition", 0, 4),
                SyntaxNode("function_definition", 3, 8),
            ]
        )
        chunks = ASTChunker(parser=parser).chunk(content, "module.py")

        assert len(chunks) == 1
        assert (chunks[0].start_line, chunks[0].end_line) == (1, 9)
        assert chunks[0].text == "\n".join(content.split("\n")[0:9])

    def test_large_node_is_split(self):
        line = "value_number_one = compute_something(argument_one, argument_two)"
        content = "\n".join([line] * 15)
        parser = ScriptedParser([SyntaxNode("function_definition", 0, 14)])

        chunks = ASTChunker(chunk_size=5, parser=parser).chunk(content, "big.py")

        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 5), (6, 10), (11, 15)]
        assert all(c.node_type == "function_definition_part" for c in chunks)


class TestFallback:
    """Tests for falling back to the smart chunker."""

    def test_unsupported_language(self):
        parser = ScriptedParser([SyntaxNode("function_definition", 0, 2)])
        chunker = ASTChunker(parser=parser)
        content = "# Title\n\nSome documentation text that is long enough.\n"

        chunks = chunker.chunk(content, "README.md")

        assert parser.calls == []
        assert chunks == smart_chunk(content, "README.md", chunker.params)

    def test_grammar_unavailable(self):
        chunker = ASTChunker(parser=ScriptedParser(None))
        assert chunker.chunk(TWO_FUNCTIONS, "funcs.py") == smart_chunk(
            TWO_FUNCTIONS, "funcs.py", chunker.params
        )

    def test_parse_error(self):
        chunker = ASTChunker(parser=ScriptedParser(error=RuntimeError("bad tree")))
        assert chunker.chunk(TWO_FUNCTIONS, "funcs.py") == smart_chunk(
            TWO_FUNCTIONS, "funcs.py", chunker.params
        )

    def test_no_semantic_nodes(self):
        chunker = ASTChunker(parser=ScriptedParser([]))
        chunks = chunker.chunk(TWO_FUNCTIONS, "funcs.py")

        assert chunks
        assert chunks == smart_chunk(TWO_FUNCTIONS, "funcs.py", chunker.params)


class TestTreeSitterParser:
    """Tests for the tree-sitter backed parser."""

    def test_cached_unavailable_grammar(self):
        parser = TreeSitterParser()
        parser._parser_cache["python"] = None

        assert parser.parse(TWO_FUNCTIONS, "python", frozenset({"function_definition"})) is None

    @requires_tree_sitter
    def test_python_functions(self):
        content = (
            "def alpha(x):\n"
            "    y = x + 1\n"
            "    return y\n"
            "\n"
            "\n"
            "def beta(x):\n"
            "    z = x * 2\n"
            "    return z\n"
        )
        chunks = ASTChunker().chunk(content, "funcs.py")

        assert [(c.start_line, c.end_line) for c in chunks] == [(1, 3), (6, 8)]
        assert {c.node_type for c in chunks} == {"function_definition"}

    @requires_tree_sitter
    def test_javascript_class(self):
        content = (
            "class Cart {\n"
            "  constructor() {\n"
            "    this.items = [];\n"
            "  }\n"
            "\n"
            "  add(item) {\n"
            "    this.items.push(item);\n"
            "  }\n"
            "}\n"
        )
        chunks = ASTChunker().chunk(content, "cart.js")

        assert len(chunks) == 1
        assert (chunks[0].start_line, chunks[0].end_line) == (1, 9)
        assert chunks[0].node_type == "class_declaration"
