"""AST-based chunking.

Parses source with tree-sitter and emits one chunk per semantic node
(function, class, method, struct, ...) instead of splitting on arbitrary
line counts. The parser sits behind the narrow SyntaxParser interface, which
only reports (node type, start row, end row) triples, so grammars can be
swapped per language without touching the chunking rules.

Whenever the file's language is unsupported, its grammar cannot be loaded,
parsing fails, or no semantic node is found, the whole file is handed to the
lexical smart chunker instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Protocol

from codescout.knowledge.chunker import smart_chunk
from codescout.knowledge.tokenizer import estimate_tokens, get_chunking_params
from codescout.knowledge.types import ChunkSpan

logger = logging.getLogger(__name__)

# File extension -> tree-sitter-language-pack grammar name
LANGUAGE_MAP: dict[str, str] = {
    "js": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "tsx",
    "py": "python",
    "go": "go",
    "rs": "rust",
    "rb": "ruby",
    "java": "java",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "cc": "cpp",
    "cxx": "cpp",
    "hpp": "cpp",
}

_JS_NODES = frozenset(
    {
        "function_declaration",
        "arrow_function",
        "class_declaration",
        "method_definition",
        "export_statement",
    }
)

# Node types treated as semantic units, per grammar
SEMANTIC_NODES: dict[str, frozenset[str]] = {
    "javascript": _JS_NODES,
    "typescript": _JS_NODES,
    "tsx": _JS_NODES,
    "python": frozenset({"function_definition", "class_definition", "decorated_definition"}),
    "go": frozenset({"function_declaration", "method_declaration", "type_declaration"}),
    "rust": frozenset({"function_item", "impl_item", "struct_item", "enum_item"}),
    "ruby": frozenset({"method", "class", "module"}),
    "java": frozenset({"method_declaration", "class_declaration", "interface_declaration"}),
    "c": frozenset({"function_definition", "struct_specifier"}),
    "cpp": frozenset({"function_definition", "class_specifier", "struct_specifier"}),
}

# Nodes spanning fewer rows than this (end_row - start_row) are skipped
MIN_NODE_ROWS = 2


@dataclass(frozen=True)
class SyntaxNode:
    """A node reported by a syntax parser, with 0-indexed inclusive rows."""

    type: str
    start_row: int
    end_row: int


class SyntaxParser(Protocol):
    """Parses content and reports nodes of the requested types.

    Returns None when no grammar is available for the language. Parse
    failures are raised.
    """

    def parse(
        self, content: str, language: str, node_types: frozenset[str]
    ) -> list[SyntaxNode] | None: ...


class TreeSitterParser:
    """SyntaxParser backed by tree-sitter-language-pack.

    Grammars are loaded on first use and cached per language; a language whose
    grammar fails to load is remembered so later files skip straight to the
    fallback.
    """

    def __init__(self):
        self._parser_cache: dict[str, Any] = {}

    def _get_parser(self, language: str):
        if language in self._parser_cache:
            return self._parser_cache[language]

        try:
            from tree_sitter_language_pack import get_parser
        except ImportError:
            logger.warning(
                "tree-sitter-language-pack not available. "
                "Install with: pip install tree-sitter-language-pack"
            )
            self._parser_cache[language] = None
            return None

        try:
            parser = get_parser(language)
        except (LookupError, ValueError, OSError) as e:
            logger.debug("Parser not available for %s: %s", language, e)
            parser = None
        self._parser_cache[language] = parser
        return parser

    def parse(
        self, content: str, language: str, node_types: frozenset[str]
    ) -> list[SyntaxNode] | None:
        parser = self._get_parser(language)
        if parser is None:
            return None

        tree = parser.parse(content.encode("utf-8"))
        found: list[SyntaxNode] = []
        stack = [tree.root_node]
        while stack:
            node = stack.pop()
            if node.type in node_types:
                found.append(SyntaxNode(node.type, node.start_point[0], node.end_point[0]))
            # reversed so children are visited in source order
            stack.extend(reversed(node.children))
        return found


class ASTChunker:
    """Chunker that splits code at syntax-tree boundaries."""

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        chunk_size: int = 25,
        parser: SyntaxParser | None = None,
    ):
        """Initialize the AST chunker.

        Args:
            model_name: Embedding model, used for token budgets and fallback
            chunk_size: Line window used to split oversized nodes
            parser: Syntax parser (defaults to tree-sitter)
        """
        self.model_name = model_name
        self.chunk_size = max(1, chunk_size)
        self.params = get_chunking_params(model_name)
        self.parser: SyntaxParser = parser or TreeSitterParser()

    @staticmethod
    def get_language_for_file(file_path: str | Path) -> str | None:
        """Map a file to its grammar name, or None when unsupported."""
        return LANGUAGE_MAP.get(Path(file_path).suffix.lstrip(".").lower())

    def chunk(self, content: str, file_path: str | Path) -> list[ChunkSpan]:
        language = self.get_language_for_file(file_path)
        if language is None:
            logger.debug("No AST support for %s, using smart chunking", file_path)
            return smart_chunk(content, file_path, self.params)

        try:
            nodes = self.parser.parse(content, language, SEMANTIC_NODES[language])
        except Exception as e:
            logger.warning("AST parse failed for %s: %s", file_path, e)
            return smart_chunk(content, file_path, self.params)

        if nodes is None:
            return smart_chunk(content, file_path, self.params)

        lines = content.split("\n")
        chunks: list[ChunkSpan] = []
        for node in nodes:
            if node.end_row - node.start_row < MIN_NODE_ROWS:
                continue
            end_row = min(node.end_row, len(lines) - 1)
            text = "\n".join(lines[node.start_row : end_row + 1])
            tokens = estimate_tokens(text)
            if tokens > self.params.target_tokens:
                chunks.extend(self._split_large_node(node, lines))
            else:
                chunks.append(
                    ChunkSpan(
                        text=text,
                        start_line=node.start_row + 1,
                        end_line=end_row + 1,
                        token_count=tokens,
                        node_type=node.type,
                    )
                )

        if not chunks:
            return smart_chunk(content, file_path, self.params)

        chunks.sort(key=lambda c: (c.start_line, -c.end_line))
        return self._merge_overlaps(chunks, lines)

    def _split_large_node(self, node: SyntaxNode, lines: list[str]) -> list[ChunkSpan]:
        """Split a node into chunk_size line windows."""
        parts = []
        last_row = min(node.end_row, len(lines) - 1)
        for start in range(node.start_row, last_row + 1, self.chunk_size):
            end = min(start + self.chunk_size - 1, last_row)
            text = "\n".join(lines[start : end + 1])
            parts.append(
                ChunkSpan(
                    text=text,
                    start_line=start + 1,
                    end_line=end + 1,
                    token_count=estimate_tokens(text),
                    node_type=f"{node.type}_part",
                )
            )
        return parts

    @staticmethod
    def _merge_overlaps(chunks: list[ChunkSpan], lines: list[str]) -> list[ChunkSpan]:
        """Fold each chunk that overlaps its predecessor into the predecessor.

        Expects chunks sorted by start line.
        """
        merged: list[ChunkSpan] = []
        for chunk in chunks:
            if merged and chunk.start_line <= merged[-1].end_line:
                prev = merged[-1]
                if chunk.end_line > prev.end_line:
                    text = "\n".join(lines[prev.start_line - 1 : chunk.end_line])
                    merged[-1] = replace(
                        prev,
                        text=text,
                        end_line=chunk.end_line,
                        token_count=estimate_tokens(text),
                    )
                continue
            merged.append(chunk)
        return merged
