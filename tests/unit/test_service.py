"""Unit tests for the code search service."""

from __future__ import annotations

from unittest.mock import MagicMock

import numpy as np
import pytest

from codescout import __version__
from codescout.config import CodeScoutConfig
from codescout.knowledge.embeddings import SentenceTransformersEmbeddings
from codescout.service import CodeSearchService, format_bytes


@pytest.fixture
async def service(config, fake_embeddings):
    service = CodeSearchService(config, embeddings=fake_embeddings)
    await service.initialize()
    yield service
    service.shutdown()


class TestFormatBytes:
    """Tests for format_bytes."""

    @pytest.mark.parametrize(
        "size,expected",
        [
            (0, "0 B"),
            (512, "512 B"),
            (2048, "2.00 KB"),
            (5 * 1024**2, "5.00 MB"),
            (3 * 1024**3, "3.00 GB"),
            (2048 * 1024**3, "2048.00 GB"),
        ],
    )
    def test_format(self, size, expected):
        assert format_bytes(size) == expected


class TestInitialize:
    """Tests for service startup."""

    @pytest.mark.asyncio
    async def test_missing_workspace(self, tmp_path, fake_embeddings):
        config = CodeScoutConfig(workspace=tmp_path / "missing")
        service = CodeSearchService(config, embeddings=fake_embeddings)

        with pytest.raises(FileNotFoundError):
            await service.initialize()
        assert service.is_initialized is False

    @pytest.mark.asyncio
    async def test_requires_initialize(self, config, fake_embeddings):
        service = CodeSearchService(config, embeddings=fake_embeddings)

        with pytest.raises(RuntimeError, match="initialize"):
            await service.search("orders")
        with pytest.raises(RuntimeError):
            await service.reindex()
        with pytest.raises(RuntimeError):
            service.clear_cache()

    @pytest.mark.asyncio
    async def test_adopts_provider_dimension(self, config, fake_embeddings):
        config.embedding.dimension = 384
        service = CodeSearchService(config, embeddings=fake_embeddings)
        try:
            await service.initialize()
            assert service.store.dimension == fake_embeddings.get_dimension()
            assert service.orchestrator.expected_dimension == fake_embeddings.get_dimension()
        finally:
            service.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_model_keeps_configured_dimension(self, config, monkeypatch):
        model = MagicMock()
        model.encode.side_effect = lambda texts, **kwargs: np.full((len(texts), 768), 0.036)
        monkeypatch.setattr(SentenceTransformersEmbeddings, "_load", lambda self: model)
        config.embedding.model = "jinaai/jina-embeddings-v2-base-code"
        config.embedding.dimension = 768
        config.performance.worker_threads = 1
        service = CodeSearchService(config)
        try:
            await service.initialize()
            report = await service.reindex()
        finally:
            service.shutdown()

        assert service.store.dimension == 768
        assert service.orchestrator.expected_dimension == 768
        assert report["chunks_failed"] == 0
        assert report["total_chunks"] > 0

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, service):
        indexer = service.indexer
        await service.initialize()
        assert service.indexer is indexer


class TestOperations:
    """Tests for reindex, search, status, and clear."""

    @pytest.mark.asyncio
    async def test_full_flow(self, service, config):
        report = await service.reindex()

        assert report["skipped"] is False
        assert report["files_processed"] == 2
        assert report["total_chunks"] > 0

        response = await service.search("order total price quantity", top_k=3)

        assert response["query"] == "order total price quantity"
        assert response["partial"] is False
        assert response["indexing"]["in_progress"] is False
        assert 0 < len(response["results"]) <= 3
        assert response["results"][0]["file"] == str(config.workspace / "src" / "app.py")

        status = service.get_status()
        assert status["version"] == __version__
        assert status["index"]["status"] == "ready"
        assert status["index"]["files"] == 2
        assert status["cache"]["type"] == "sqlite"
        assert status["cache"]["size_bytes"] > 0
        assert status["model"]["name"] == "fake-embed"
        assert status["model"]["dimension"] == 256
        assert status["config"]["chunking_mode"] == "smart"

        cleared = service.clear_cache()
        assert cleared["success"] is True
        assert cleared["message"].startswith("Cache cleared")
        assert service.get_status()["index"]["status"] == "empty"
        assert (await service.search("order total"))["results"] == []

    @pytest.mark.asyncio
    async def test_second_reindex_is_incremental(self, service):
        await service.reindex()
        report = await service.reindex()

        assert report["files_processed"] == 0
        assert report["files_unchanged"] == 2

    @pytest.mark.asyncio
    async def test_clear_refused_while_indexing(self, service):
        await service.reindex()
        service.indexer._indexing = True
        try:
            result = service.clear_cache()
        finally:
            service.indexer._indexing = False

        assert result == {
            "success": False,
            "message": "Cannot clear cache while indexing is in progress",
        }
        assert service.store.get_vector_count() > 0

    @pytest.mark.asyncio
    async def test_shutdown_closes_store(self, config, fake_embeddings):
        service = CodeSearchService(config, embeddings=fake_embeddings)
        await service.initialize()
        await service.reindex()

        service.shutdown()

        assert service.store.is_open is False


class TestStatus:
    """Tests for status before and without initialization."""

    def test_status_before_initialize(self, config):
        service = CodeSearchService(config)
        status = service.get_status()

        assert status["index"]["status"] == "empty"
        assert status["index"]["progressive"] is None
        assert status["model"]["name"] == config.embedding.model
        assert status["model"]["device"] == "auto"
        assert status["cache"]["type"] == "none"
        assert status["throttling"]["batch_delay_ms"] == 0

    @pytest.mark.asyncio
    async def test_disabled_cache(self, config, fake_embeddings):
        config.index.enable_cache = False
        service = CodeSearchService(config, embeddings=fake_embeddings)
        try:
            await service.initialize()
            status = service.get_status()
        finally:
            service.shutdown()

        assert status["cache"]["enabled"] is False
        assert status["cache"]["type"] == "none"
