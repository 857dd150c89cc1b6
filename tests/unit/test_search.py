"""Unit tests for hybrid search.

Tests cover:
- Cosine similarity properties
- Exact-match boost and term overlap
- Deterministic tie-breaking and top-k truncation
- Degenerate vectors and empty inputs
- End-to-end ranking over an indexed workspace
"""

from __future__ import annotations

import math
from unittest.mock import AsyncMock, MagicMock

import pytest

from codescout.config import SearchConfig
from codescout.knowledge.indexer import CodebaseIndexer
from codescout.knowledge.orchestrator import EmbeddingOrchestrator
from codescout.knowledge.search import (
    HybridSearch,
    SearchResult,
    cosine_similarity,
    normalize_text,
    query_terms,
)
from codescout.knowledge.throttle import ResourceThrottle
from codescout.knowledge.types import IndexingStatus, StoredChunk


def _stored(file, start, content, vector):
    return StoredChunk(file, start, start + 4, content, vector)


class TestCosineSimilarity:
    """Tests for cosine_similarity."""

    def test_self_similarity(self):
        vector = [0.3, -1.2, 4.0, 0.01]
        assert cosine_similarity(vector, vector) == pytest.approx(1.0, abs=1e-6)

    def test_symmetric(self):
        a, b = [1.0, 2.0, 3.0], [-2.0, 0.5, 1.0]
        assert cosine_similarity(a, b) == cosine_similarity(b, a)

    def test_orthogonal_and_opposite(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_nan_scores_zero(self):
        assert cosine_similarity([math.nan, 1.0], [1.0, 1.0]) == 0.0

    def test_mismatched_lengths_score_zero(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0


class TestTextHelpers:
    """Tests for query normalization."""

    def test_normalize_text(self):
        assert normalize_text("  Parse\tConfig\n FILE ") == "parse config file"

    def test_query_terms(self):
        assert query_terms("Parse the config, parse it") == {"parse", "the", "config", "it"}


class TestRank:
    """Tests for scoring and ordering."""

    def _search(self, **config) -> HybridSearch:
        return HybridSearch(MagicMock(), MagicMock(), SearchConfig(**config))

    def test_exact_match_ranks_first(self):
        vector = [1.0, 0.0, 0.0]
        chunks = [
            _stored("/ws/a.py", 1, "def load(): read config file", vector),
            _stored("/ws/b.py", 1, "def load(): parse config file here", vector),
        ]

        results = self._search(exact_match_boost=1.5).rank("parse config file", vector, chunks, 5)

        assert results[0].file == "/ws/b.py"
        assert results[0].exact_match is True
        assert results[1].exact_match is False
        assert results[0].score - results[1].score >= 1.5 - 1e-9

    @pytest.mark.parametrize("boost", [0.01, 0.5, 1.5, 10.0])
    def test_boost_never_lowers_rank(self, boost):
        """A verbatim match scores at least as high as an equal-similarity chunk."""
        vector = [0.2, 0.9]
        chunks = [
            _stored("/ws/a.py", 1, "config file parse", vector),
            _stored("/ws/z.py", 1, "we parse config file", vector),
        ]

        results = self._search(exact_match_boost=boost).rank(
            "parse config file", [0.5, 0.5], chunks, 2
        )

        assert results[0].file == "/ws/z.py"
        assert results[0].score >= results[1].score

    def test_whitespace_and_case_insensitive_match(self):
        chunk = _stored("/ws/a.py", 1, "def Parse_Config(\n    path):", [1.0])

        results = self._search().rank("parse_config(  PATH", [1.0], [chunk], 1)

        assert results[0].exact_match is True

    def test_weighted_score(self):
        chunk = _stored("/ws/a.py", 1, "alpha beta", [1.0, 0.0])

        result = self._search(semantic_weight=0.6, exact_match_boost=0.0).rank(
            "alpha gamma", [1.0, 0.0], [chunk], 1
        )[0]

        assert result.similarity == pytest.approx(1.0)
        assert result.term_overlap == pytest.approx(0.5)
        assert result.score == pytest.approx(0.6 * 1.0 + 0.4 * 0.5)

    def test_ties_broken_by_file_then_line(self):
        vector = [1.0, 1.0]
        chunks = [
            _stored("/ws/b.py", 1, "same content", vector),
            _stored("/ws/a.py", 10, "same content", vector),
            _stored("/ws/a.py", 1, "same content", vector),
        ]

        results = self._search().rank("unrelated", vector, chunks, 3)

        assert [(r.file, r.start_line) for r in results] == [
            ("/ws/a.py", 1),
            ("/ws/a.py", 10),
            ("/ws/b.py", 1),
        ]

    def test_top_k(self):
        chunks = [_stored(f"/ws/{n}.py", 1, f"chunk {n}", [1.0, float(n)]) for n in range(10)]

        assert len(self._search().rank("chunk", [1.0, 1.0], chunks, 3)) == 3

    def test_degenerate_vectors_score_zero(self):
        chunks = [
            _stored("/ws/nan.py", 1, "xyz", [math.nan, 1.0]),
            _stored("/ws/zero.py", 1, "xyz", [0.0, 0.0]),
            _stored("/ws/short.py", 1, "xyz", [1.0]),
            _stored("/ws/ok.py", 1, "xyz", [1.0, 0.0]),
        ]

        results = self._search().rank("query", [1.0, 0.0], chunks, 4)

        by_file = {r.file: r for r in results}
        assert results[0].file == "/ws/ok.py"
        assert by_file["/ws/nan.py"].similarity == 0.0
        assert by_file["/ws/zero.py"].similarity == 0.0
        assert by_file["/ws/short.py"].similarity == 0.0
        assert all(math.isfinite(r.score) for r in results)


class TestSearch:
    """Tests for the async search entry point."""

    @pytest.mark.asyncio
    async def test_blank_query_skips_embedding(self):
        embeddings = MagicMock()
        embeddings.embed = AsyncMock()
        search = HybridSearch(MagicMock(), embeddings)

        assert await search.search("   ") == []
        embeddings.embed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_store(self, store, fake_embeddings):
        assert await HybridSearch(store, fake_embeddings).search("anything") == []

    @pytest.mark.asyncio
    async def test_invalid_top_k(self, store, fake_embeddings):
        with pytest.raises(ValueError):
            await HybridSearch(store, fake_embeddings).search("query", top_k=0)

    def test_partial_flag(self, store, fake_embeddings):
        status = IndexingStatus()
        search = HybridSearch(store, fake_embeddings, status=status)

        assert search.is_partial is False
        status.in_progress = True
        assert search.is_partial is True


class TestSearchResult:
    """Tests for result formatting."""

    def test_context_string(self, tmp_path):
        result = SearchResult(
            file=str(tmp_path / "src" / "app.py"),
            start_line=3,
            end_line=5,
            content="def main():\n    pass",
            score=0.8,
        )

        text = result.to_context_string(tmp_path)

        assert text.splitlines()[0] == "# src/app.py:3-5 (relevance: 80.0%)"
        assert "```py" in text

    def test_to_dict(self):
        result = SearchResult("/ws/a.py", 1, 2, "x", 0.5, similarity=0.4, exact_match=True)
        assert result.to_dict()["exact_match"] is True
        assert result.to_dict()["start_line"] == 1


class TestEndToEnd:
    """Index a small workspace and query it."""

    @pytest.mark.asyncio
    async def test_function_in_javascript_file_ranks_first(self, store, config, fake_embeddings):
        body = [
            "function computeInvoiceTotal(invoice) {",
            "  let total = 0;",
        ]
        body += [f"  total += invoice.lines[{n}].amount * invoice.lines[{n}].quantity;" for n in range(37)]
        body.append("}")
        (config.workspace / "a.js").write_text("\n".join(body))
        (config.workspace / "b.py").write_text("x = 1\ny = 2\nz = x + y\nprint(z)\n")
        for name in ("app.py", "util.js"):
            (config.workspace / "src" / name).unlink()

        throttle = ResourceThrottle(batch_delay_ms=0)
        indexer = CodebaseIndexer(
            config, store, EmbeddingOrchestrator(fake_embeddings, throttle), throttle=throttle
        )
        await indexer.index_all()

        files = {c.file for c in store.get_vector_store()}
        assert str(config.workspace / "a.js") in files

        results = await HybridSearch(store, fake_embeddings, config.search).search(
            "the function in a.js", top_k=10
        )

        assert results[0].file == str(config.workspace / "a.js")
        b_scores = [r.score for r in results if r.file.endswith("b.py")]
        assert all(score < results[0].score for score in b_scores)
