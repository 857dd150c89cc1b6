"""Shared data types for the indexing and retrieval pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NamedTuple


class ChunkKey(NamedTuple):
    """Composite identity of a stored chunk.

    A chunk is addressed by its file and the full line range, so two chunks
    that share a start line but end differently never collide.
    """

    file: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class ChunkSpan:
    """A contiguous span of a source file produced by a chunker.

    Attributes:
        text: Raw text of the span (lines joined with newlines)
        start_line: First line, 1-indexed
        end_line: Last line, 1-indexed, inclusive
        token_count: Estimated token count of the span
        node_type: Syntax node type for AST chunks, None otherwise
    """

    text: str
    start_line: int
    end_line: int
    token_count: int = 0
    node_type: str | None = None


@dataclass(frozen=True)
class PendingChunk:
    """A chunk waiting to be embedded."""

    file: str
    text: str
    start_line: int
    end_line: int

    @property
    def key(self) -> ChunkKey:
        return ChunkKey(self.file, self.start_line, self.end_line)


@dataclass
class EmbeddedChunk:
    """Outcome of embedding one chunk.

    Failed chunks keep an empty vector and an error message; they are
    never written to the store.
    """

    file: str
    start_line: int
    end_line: int
    content: str
    vector: list[float] = field(default_factory=list)
    success: bool = True
    error: str | None = None

    @property
    def key(self) -> ChunkKey:
        return ChunkKey(self.file, self.start_line, self.end_line)

    @classmethod
    def failed(cls, chunk: PendingChunk, error: str) -> EmbeddedChunk:
        return cls(
            file=chunk.file,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            content=chunk.text,
            success=False,
            error=error,
        )


@dataclass
class StoredChunk:
    """A chunk as persisted in the vector store."""

    file: str
    start_line: int
    end_line: int
    content: str
    vector: list[float]

    @property
    def key(self) -> ChunkKey:
        return ChunkKey(self.file, self.start_line, self.end_line)


@dataclass
class IndexingStatus:
    """In-memory progress of the current indexing run."""

    in_progress: bool = False
    total_files: int = 0
    processed_files: int = 0
    percentage: int = 0

    def reset(self) -> None:
        self.in_progress = False
        self.total_files = 0
        self.processed_files = 0
        self.percentage = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "in_progress": self.in_progress,
            "total_files": self.total_files,
            "processed_files": self.processed_files,
            "percentage": self.percentage,
        }
