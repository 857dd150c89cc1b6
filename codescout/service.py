"""Request surface for one workspace.

CodeSearchService wires the store, embedding provider, orchestrator, indexer,
and ranker together and exposes the operations the CLI (or any other front
end) needs: reindex, search, clear cache, and status.
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any

from codescout import __version__
from codescout.config import CodeScoutConfig
from codescout.knowledge.embeddings import EmbeddingProvider, create_embedding_provider
from codescout.knowledge.indexer import CodebaseIndexer, ProgressCallback
from codescout.knowledge.orchestrator import EmbeddingOrchestrator, WorkerFactory
from codescout.knowledge.search import HybridSearch
from codescout.knowledge.store import LEGACY_VECTORS_FILE, VectorStore
from codescout.knowledge.throttle import ResourceThrottle

logger = logging.getLogger(__name__)


def format_bytes(size: int) -> str:
    """Human-readable byte count (B, KB, MB, GB)."""
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB"):
        value /= 1024
        if value < 1024 or unit == "GB":
            return f"{value:.2f} {unit}"
    return f"{value:.2f} GB"


class CodeSearchService:
    """Semantic code search over one workspace.

    Usage:
        service = CodeSearchService(load_config(path))
        await service.initialize()
        await service.reindex()
        response = await service.search("parse config file")
        service.shutdown()
    """

    def __init__(
        self,
        config: CodeScoutConfig,
        embeddings: EmbeddingProvider | None = None,
        worker_factory: WorkerFactory | None = None,
        progress_callback: ProgressCallback | None = None,
    ):
        """Initialize the service.

        Args:
            config: Workspace configuration
            embeddings: Provider to use instead of the configured one
            worker_factory: Executor factory for embedding workers
            progress_callback: Receives indexing progress (progress, total, message)
        """
        self.config = config
        self._embeddings = embeddings
        self._worker_factory = worker_factory
        self._progress_callback = progress_callback
        self._started_at = time.monotonic()

        self.store = VectorStore(
            config.cache_directory,
            enabled=config.index.enable_cache,
            dimension=config.embedding.dimension,
        )
        perf = config.performance
        self.throttle = ResourceThrottle(
            max_cpu_percent=perf.max_cpu_percent,
            batch_delay_ms=perf.batch_delay_ms,
            max_workers=perf.max_workers,
        )

        self.embeddings: EmbeddingProvider | None = None
        self.orchestrator: EmbeddingOrchestrator | None = None
        self.indexer: CodebaseIndexer | None = None
        self.search_engine: HybridSearch | None = None

    @property
    def is_initialized(self) -> bool:
        return self.indexer is not None

    def _require_initialized(self) -> None:
        if not self.is_initialized:
            raise RuntimeError("Service not initialized. Call initialize() first.")

    async def initialize(self) -> None:
        """Open the store and build the indexing and search pipeline.

        Raises:
            FileNotFoundError: If the workspace does not exist
            RuntimeError: If the store cannot be opened
        """
        if self.is_initialized:
            return
        workspace = self.config.workspace
        if not workspace.is_dir():
            raise FileNotFoundError(f"Workspace not found: {workspace}")

        embedding_config = self.config.embedding_config()
        provider_factory = None
        if self._embeddings is None:
            self.embeddings = create_embedding_provider(embedding_config)
            provider_factory = functools.partial(create_embedding_provider, embedding_config)
        else:
            self.embeddings = self._embeddings

        dimension = self.embeddings.get_dimension()
        if dimension != self.config.embedding.dimension:
            logger.warning(
                "Configured dimension %d does not match %s (%d), using %d",
                self.config.embedding.dimension,
                self.embeddings.get_model_name(),
                dimension,
                dimension,
            )
            self.store.dimension = dimension

        self.store.load()

        self.orchestrator = EmbeddingOrchestrator(
            self.embeddings,
            throttle=self.throttle,
            worker_threads=self.config.performance.worker_threads,
            provider_factory=provider_factory,
            worker_factory=self._worker_factory,
            expected_dimension=dimension,
            batch_timeout=self.config.performance.batch_timeout,
        )
        self.indexer = CodebaseIndexer(
            self.config,
            self.store,
            self.orchestrator,
            throttle=self.throttle,
            progress_callback=self._progress_callback,
        )
        self.search_engine = HybridSearch(
            self.store,
            self.embeddings,
            self.config.search,
            status=self.indexer.status,
        )
        logger.info("Code search ready for %s", workspace)

    async def reindex(self, force: bool = False) -> dict[str, Any]:
        """Run an indexing pass and return its report."""
        self._require_initialized()
        result = await self.indexer.index_all(force=force)
        return result.to_dict()

    async def search(self, query: str, top_k: int | None = None) -> dict[str, Any]:
        """Search the index.

        Returns:
            Dictionary with `results`, `partial` (an indexing run is still
            filling the store), and the current `indexing` status
        """
        self._require_initialized()
        results = await self.search_engine.search(query, top_k)
        return {
            "query": query,
            "results": [r.to_dict() for r in results],
            "partial": self.search_engine.is_partial,
            "indexing": self.indexer.status.to_dict(),
        }

    def clear_cache(self) -> dict[str, Any]:
        """Delete every stored chunk and hash; refused while indexing."""
        self._require_initialized()
        if self.indexer.is_indexing:
            return {
                "success": False,
                "message": "Cannot clear cache while indexing is in progress",
            }
        self.store.clear()
        return {
            "success": True,
            "message": f"Cache cleared: {self.config.cache_directory}",
        }

    def _cache_type(self) -> str:
        if not self.store.enabled:
            return "none"
        if self.store.db_path.exists():
            return "sqlite"
        if (self.config.cache_directory / LEGACY_VECTORS_FILE).exists():
            return "json"
        return "none"

    def _index_state(self, chunks: int) -> str:
        if self.indexer is not None and self.indexer.is_indexing:
            return "indexing"
        return "ready" if chunks else "empty"

    def get_status(self) -> dict[str, Any]:
        """Snapshot of the service, index, cache, and configuration."""
        chunks = self.store.get_vector_count()
        size = self.store.get_size_bytes()
        indexing = self.indexer.status.to_dict() if self.indexer else None
        embeddings = self.embeddings

        return {
            "version": __version__,
            "uptime": round(time.monotonic() - self._started_at, 1),
            "workspace": str(self.config.workspace),
            "model": {
                "name": embeddings.get_model_name() if embeddings else self.config.embedding.model,
                "dimension": (
                    embeddings.get_dimension() if embeddings else self.config.embedding.dimension
                ),
                "device": embeddings.device if embeddings else self.config.embedding.device,
            },
            "index": {
                "status": self._index_state(chunks),
                "files": self.store.get_file_count(),
                "chunks": chunks,
                "progressive": indexing,
            },
            "cache": {
                "enabled": self.store.enabled,
                "type": self._cache_type(),
                "path": str(self.store.db_path),
                "size_bytes": size,
                "size_formatted": format_bytes(size),
            },
            "config": {
                "chunking_mode": self.config.index.chunking_mode.value,
                "chunk_size": self.config.index.chunk_size,
                "batch_size": self.config.index.batch_size,
                "max_results": self.config.search.max_results,
                "semantic_weight": self.config.search.semantic_weight,
                "exact_match_boost": self.config.search.exact_match_boost,
                "watch_files": self.config.index.watch_files,
            },
            "throttling": self.throttle.to_dict(),
        }

    def start_watching(self) -> None:
        """Re-index files as they change; call from the running event loop."""
        self._require_initialized()
        self.indexer.start_watching()

    def shutdown(self) -> None:
        """Stop watching, stop workers, checkpoint, and close the store."""
        if self.indexer is not None:
            self.indexer.stop_watching()
        if self.orchestrator is not None:
            self.orchestrator.shutdown(wait=False)
        self.store.save()
        self.store.close()
        logger.info("Code search service stopped")
