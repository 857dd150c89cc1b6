"""Lexical chunking strategies.

Two chunkers live here:
- SmartChunker: token-budgeted splitting that prefers language-specific
  boundaries (function/class/struct declarations) and carries a small
  overlap window between chunks.
- LineChunker: fixed windows of N lines with a fixed line overlap.

Both split content on "\\n" only, so the lines between start_line and
end_line of any chunk joined with "\\n" reproduce the chunk text exactly.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from codescout.knowledge.tokenizer import ChunkingParams, estimate_tokens, get_chunking_params
from codescout.knowledge.types import ChunkSpan

if TYPE_CHECKING:
    from codescout.config import CodeScoutConfig

# Chunks whose stripped text is not longer than this are dropped
MIN_CHUNK_CHARS = 20

# A boundary only triggers a split once the chunk holds this share of the budget
BOUNDARY_SPLIT_RATIO = 0.6
BOUNDARY_MIN_LINES = 3

_JS = re.compile(r"^(export\s+)?(async\s+)?(function|class|const|let|var)\s+\w+")
_TS = re.compile(r"^(export\s+)?(async\s+)?(function|class|const|let|var|interface|type)\s+\w+")
_PY = re.compile(r"^(class|def|async\s+def)\s+\w+")
_KOTLIN = re.compile(r"^(class|interface|object|fun|val|var)\s+\w+")
_CPP = re.compile(r"^(class|struct|namespace|template|void|int|bool)\s+\w+")
_CSHARP = re.compile(
    r"^(public|private|protected)?\s*(static\s+)?"
    r"(class|interface|struct|enum|void|int|string|bool)\s+\w+"
)
_R = re.compile(r"^(\w+)\s*(<-|=)\s*function")
_SHELL = re.compile(r"^(\w+\s*\(\)|function\s+\w+)")
_HTML = re.compile(
    r"^(<(div|section|article|header|footer|nav|main|aside|form|table|template|script|style)\b)",
    re.IGNORECASE,
)
_YAML = re.compile(r"^(\w[\w-]*:\s*[|>]?$|\w[\w-]*:\s*$)")
_PERL = re.compile(r"^(sub|package|use|require)\s+\w+")

BOUNDARY_PATTERNS: dict[str, re.Pattern[str]] = {
    # JavaScript / TypeScript
    "js": _JS,
    "jsx": _JS,
    "mjs": _JS,
    "cjs": _JS,
    "ts": _TS,
    "tsx": _TS,
    # Python
    "py": _PY,
    "pyw": _PY,
    "pyx": re.compile(r"^(cdef|cpdef|def|class)\s+\w+"),
    # JVM
    "java": re.compile(
        r"^(public|private|protected)?\s*(static\s+)?"
        r"(class|interface|enum|void|int|String|boolean)\s+\w+"
    ),
    "kt": _KOTLIN,
    "kts": _KOTLIN,
    "scala": re.compile(r"^(class|object|trait|def|val|var)\s+\w+"),
    # C family
    "c": re.compile(r"^(struct|enum|union|void|int|char|float|double)\s+\w+"),
    "cpp": _CPP,
    "cc": _CPP,
    "cxx": _CPP,
    "h": _CPP,
    "hpp": _CPP,
    "hxx": _CPP,
    "cs": _CSHARP,
    "csx": _CSHARP,
    # Systems and scripting
    "go": re.compile(r"^(func|type|const|var)\s+\w+"),
    "rs": re.compile(r"^(pub\s+)?(fn|struct|enum|trait|impl|const|static|mod)\s+\w+"),
    "php": re.compile(r"^(class|interface|trait|function|const)\s+\w+"),
    "phtml": re.compile(r"^(<\?php|class|interface|trait|function)\s*"),
    "rb": re.compile(r"^(class|module|def)\s+\w+"),
    "rake": re.compile(r"^(class|module|def|task|namespace)\s+\w+"),
    "swift": re.compile(r"^(class|struct|enum|protocol|func|var|let|extension)\s+\w+"),
    "r": _R,
    "lua": re.compile(r"^(function|local\s+function)\s+\w+"),
    "sh": _SHELL,
    "bash": _SHELL,
    "zsh": _SHELL,
    "fish": re.compile(r"^function\s+\w+"),
    "pl": _PERL,
    "pm": _PERL,
    "vim": re.compile(r"^(function|command|autocmd|let\s+g:)\s*"),
    # Styles
    "css": re.compile(r"^(\.|#|@media|@keyframes|@font-face|\w+)\s*[{,]"),
    "scss": re.compile(r"^(\$\w+:|@mixin|@function|@include|\.|#|@media)\s*"),
    "sass": re.compile(r"^(\$\w+:|=\w+|\+\w+|\.|#|@media)\s*"),
    "less": re.compile(r"^(@\w+:|\.|#|@media)\s*"),
    # Markup
    "html": _HTML,
    "htm": _HTML,
    "xml": re.compile(r"^(<\w+|\s*<!\[CDATA\[)"),
    "svg": re.compile(r"^(<svg|<g|<path|<defs|<symbol)\b"),
    # Config
    "json": re.compile(r'^(\s*"[\w-]+"\s*:\s*[\[{])'),
    "yaml": _YAML,
    "yml": _YAML,
    "toml": re.compile(r"^(\[\[?\w+\]?\]?|\w+\s*=)"),
    "ini": re.compile(r"^(\[\w+\]|\w+\s*=)"),
    "env": re.compile(r"^[A-Z_][A-Z0-9_]*="),
    # Documentation
    "md": re.compile(r"^(#{1,6}\s+|```|\*{3}|_{3})"),
    "mdx": re.compile(r"^(#{1,6}\s+|```|import\s+|export\s+)"),
    "rst": re.compile(r"^(={3,}|-{3,}|~{3,}|\.\.\s+\w+::)"),
    "txt": re.compile(r"^.{50,}"),
    # Database
    "sql": re.compile(
        r"^(CREATE|ALTER|INSERT|UPDATE|DELETE|SELECT|DROP|GRANT|REVOKE|WITH|DECLARE|BEGIN|END)\s+",
        re.IGNORECASE,
    ),
}


def get_boundary_pattern(file_path: str | Path) -> re.Pattern[str]:
    """Return the declaration-boundary pattern for a file, JS as the default."""
    ext = Path(file_path).suffix.lstrip(".")
    return BOUNDARY_PATTERNS.get(ext) or BOUNDARY_PATTERNS.get(ext.lower(), _JS)


def _keep(text: str) -> bool:
    return len(text.strip()) > MIN_CHUNK_CHARS


def smart_chunk(content: str, file_path: str | Path, params: ChunkingParams) -> list[ChunkSpan]:
    """Split content into token-budgeted chunks that prefer declaration boundaries.

    A chunk is closed before line i when adding the line would exceed the
    target budget, or when the line starts a declaration and the chunk already
    holds more than BOUNDARY_MIN_LINES lines and 60% of the budget. The trailing
    lines that fit inside the overlap budget are carried into the next chunk.

    Args:
        content: File content
        file_path: Path used to pick the boundary pattern
        params: Token budgets for the target embedding model

    Returns:
        Chunks in ascending line order
    """
    lines = content.split("\n")
    pattern = get_boundary_pattern(file_path)
    target = params.target_tokens
    chunks: list[ChunkSpan] = []

    current: list[str] = []
    current_tokens = 0
    chunk_start = 0
    carried = 0  # overlap lines at the head of `current`

    for i, line in enumerate(lines):
        line_tokens = estimate_tokens(line)

        would_exceed = current_tokens + line_tokens > target
        at_boundary = (
            len(current) > BOUNDARY_MIN_LINES
            and current_tokens > target * BOUNDARY_SPLIT_RATIO
            and pattern.match(line.strip()) is not None
        )

        if (would_exceed or at_boundary) and len(current) > carried:
            text = "\n".join(current)
            if _keep(text):
                chunks.append(
                    ChunkSpan(
                        text=text,
                        start_line=chunk_start + 1,
                        end_line=i,
                        token_count=current_tokens,
                    )
                )

            overlap: list[str] = []
            overlap_tokens = 0
            for prev in reversed(current):
                if overlap_tokens >= params.overlap_tokens:
                    break
                prev_tokens = estimate_tokens(prev)
                if overlap_tokens + prev_tokens > params.overlap_tokens:
                    break
                overlap.insert(0, prev)
                overlap_tokens += prev_tokens

            current = overlap
            current_tokens = overlap_tokens
            carried = len(overlap)
            chunk_start = i - len(overlap)

        current.append(line)
        current_tokens += line_tokens

    if current:
        text = "\n".join(current)
        if _keep(text):
            chunks.append(
                ChunkSpan(
                    text=text,
                    start_line=chunk_start + 1,
                    end_line=len(lines),
                    token_count=current_tokens,
                )
            )

    return chunks


def line_chunk(content: str, chunk_size: int, chunk_overlap: int) -> list[ChunkSpan]:
    """Split content into fixed windows of chunk_size lines.

    Consecutive windows share chunk_overlap lines.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    lines = content.split("\n")
    step = max(1, chunk_size - max(0, chunk_overlap))
    chunks: list[ChunkSpan] = []

    for start in range(0, len(lines), step):
        end = min(start + chunk_size, len(lines))
        text = "\n".join(lines[start:end])
        if _keep(text):
            chunks.append(
                ChunkSpan(
                    text=text,
                    start_line=start + 1,
                    end_line=end,
                    token_count=estimate_tokens(text),
                )
            )
        if end >= len(lines):
            break

    return chunks


class Chunker(Protocol):
    """Anything that turns file content into chunk spans."""

    def chunk(self, content: str, file_path: str | Path) -> list[ChunkSpan]: ...


class SmartChunker:
    """Language-aware lexical chunker sized for an embedding model."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self.params = get_chunking_params(model_name)

    def chunk(self, content: str, file_path: str | Path) -> list[ChunkSpan]:
        return smart_chunk(content, file_path, self.params)


class LineChunker:
    """Fixed-size line window chunker."""

    def __init__(self, chunk_size: int = 25, chunk_overlap: int = 5):
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def chunk(self, content: str, file_path: str | Path) -> list[ChunkSpan]:
        return line_chunk(content, self.chunk_size, self.chunk_overlap)


def get_chunker(config: CodeScoutConfig) -> Chunker:
    """Create the chunker selected by the configured chunking mode."""
    from codescout.config import ChunkingMode

    match config.index.chunking_mode:
        case ChunkingMode.AST:
            from codescout.knowledge.ast_chunker import ASTChunker

            return ASTChunker(
                model_name=config.embedding.model,
                chunk_size=config.index.chunk_size,
            )
        case ChunkingMode.LINE:
            return LineChunker(config.index.chunk_size, config.index.chunk_overlap)
        case _:
            return SmartChunker(config.embedding.model)
