"""Hybrid semantic + lexical search over the vector store.

Scoring formula, with w = semantic_weight in [0, 1] and b = exact_match_boost >= 0:

    score = w * cosine(query, chunk)
          + (1 - w) * term_overlap(query, chunk)
          + (b if exact_match(query, chunk) else 0)

term_overlap is the fraction of distinct lower-cased query words that occur in
the chunk; exact_match holds when the whole query, lower-cased with runs of
whitespace collapsed, occurs in the chunk normalized the same way. A chunk
containing the query verbatim also contains every query word, so it always
scores at least as high as a chunk with the same cosine and no match.

Results are ordered by score, then file path, then start line.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from codescout.config import SearchConfig
from codescout.knowledge.embeddings import EmbeddingProvider
from codescout.knowledge.store import VectorStore
from codescout.knowledge.types import IndexingStatus, StoredChunk

logger = logging.getLogger(__name__)

_TERM_PATTERN = re.compile(r"\w+")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity, 0.0 for zero-norm or mismatched vectors."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0 or not np.isfinite(norm):
        return 0.0
    value = float(np.dot(va, vb) / norm)
    return value if np.isfinite(value) else 0.0


def normalize_text(text: str) -> str:
    return " ".join(text.lower().split())


def query_terms(query: str) -> set[str]:
    return set(_TERM_PATTERN.findall(query.lower()))


@dataclass
class SearchResult:
    """A ranked chunk.

    Attributes:
        file: Absolute path of the source file
        start_line: First line of the chunk (1-indexed)
        end_line: Last line of the chunk (inclusive)
        content: Chunk text
        score: Final hybrid score
        similarity: Cosine similarity with the query
        exact_match: Whether the whole query occurs in the chunk
        term_overlap: Fraction of query words found in the chunk
    """

    file: str
    start_line: int
    end_line: int
    content: str
    score: float
    similarity: float = 0.0
    exact_match: bool = False
    term_overlap: float = 0.0

    def to_context_string(self, root: Path | None = None) -> str:
        """Format as a fenced snippet with a location header."""
        path = self.file
        if root is not None:
            try:
                path = str(Path(self.file).relative_to(root))
            except ValueError:
                pass
        language = Path(self.file).suffix.lstrip(".")
        return "\n".join(
            [
                f"# {path}:{self.start_line}-{self.end_line} (relevance: {self.score * 100:.1f}%)",
                f"```{language}",
                self.content,
                "```",
            ]
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "content": self.content,
            "score": self.score,
            "similarity": self.similarity,
            "exact_match": self.exact_match,
            "term_overlap": self.term_overlap,
        }


class HybridSearch:
    """Ranks stored chunks against a natural-language query.

    Searches run against whatever is persisted, including while an indexing
    run is still filling the store.
    """

    def __init__(
        self,
        store: VectorStore,
        embeddings: EmbeddingProvider,
        config: SearchConfig | None = None,
        status: IndexingStatus | None = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.config = config or SearchConfig()
        self.status = status

    @property
    def is_partial(self) -> bool:
        return bool(self.status and self.status.in_progress)

    async def search(self, query: str, top_k: int | None = None) -> list[SearchResult]:
        """Embed the query and return the top_k best chunks.

        Args:
            query: Natural-language or code query
            top_k: Number of results (defaults to max_results)

        Raises:
            ValueError: If top_k is not positive
        """
        top_k = self.config.max_results if top_k is None else top_k
        if top_k < 1:
            raise ValueError(f"top_k must be positive, got {top_k}")
        if not query.strip():
            return []

        chunks = self.store.get_vector_store()
        if not chunks:
            return []

        if self.is_partial:
            logger.info(
                "Searching partial index (%d%% indexed, %d chunks)",
                self.status.percentage,
                len(chunks),
            )

        query_vector = await self.embeddings.embed(query)
        return self.rank(query, query_vector, chunks, top_k)

    def rank(
        self,
        query: str,
        query_vector: Sequence[float],
        chunks: Sequence[StoredChunk],
        top_k: int,
    ) -> list[SearchResult]:
        """Score chunks against an embedded query and keep the best top_k."""
        similarities = self._similarities(query_vector, chunks)
        weight = self.config.semantic_weight
        boost = self.config.exact_match_boost
        normalized_query = normalize_text(query)
        terms = query_terms(query)

        results = []
        for chunk, similarity in zip(chunks, similarities):
            content = chunk.content.lower()
            overlap = sum(1 for term in terms if term in content) / len(terms) if terms else 0.0
            exact = bool(normalized_query) and normalized_query in normalize_text(chunk.content)
            score = weight * similarity + (1 - weight) * overlap + (boost if exact else 0.0)
            results.append(
                SearchResult(
                    file=chunk.file,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    content=chunk.content,
                    score=score,
                    similarity=similarity,
                    exact_match=exact,
                    term_overlap=overlap,
                )
            )

        results.sort(key=lambda r: (-r.score, r.file, r.start_line))
        return results[:top_k]

    @staticmethod
    def _similarities(query_vector: Sequence[float], chunks: Sequence[StoredChunk]) -> list[float]:
        """Cosine similarity per chunk; NaN and dimension mismatches score 0."""
        query = np.asarray(query_vector, dtype=np.float64)
        scores = np.zeros(len(chunks), dtype=np.float64)
        rows = [i for i, chunk in enumerate(chunks) if len(chunk.vector) == query.shape[0]]
        if len(rows) < len(chunks):
            logger.warning(
                "%d stored vectors do not match the query dimension %d",
                len(chunks) - len(rows),
                query.shape[0],
            )
        if rows:
            matrix = np.asarray([chunks[i].vector for i in rows], dtype=np.float64)
            with np.errstate(divide="ignore", invalid="ignore"):
                values = (matrix @ query) / (np.linalg.norm(matrix, axis=1) * np.linalg.norm(query))
            scores[rows] = np.nan_to_num(values, nan=0.0, posinf=0.0, neginf=0.0)
        return scores.tolist()
