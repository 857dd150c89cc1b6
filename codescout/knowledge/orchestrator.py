"""Parallel embedding orchestration.

Chunk batches are embedded by a small pool of worker processes, each of which
loads its own copy of the embedding model. A batch is split into contiguous,
near-equal slices (one per worker); every slice is submitted before any
result is awaited, and each result is awaited under a hard timeout.

A slice whose worker times out, crashes, or reports an error is recomputed in
the coordinating process one chunk at a time, so a single bad chunk only
fails itself. A timed-out or crashed worker is discarded (its late output is
never read) and replaced the next time it is needed.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from typing import TypeVar

from codescout.knowledge.embeddings import EmbeddingProvider
from codescout.knowledge.throttle import ResourceThrottle
from codescout.knowledge.types import EmbeddedChunk, PendingChunk

logger = logging.getLogger(__name__)

DEFAULT_BATCH_TIMEOUT = 300.0  # seconds per worker slice
WORKER_INIT_TIMEOUT = 120.0  # seconds for every worker to load its model

# Model families that misbehave when loaded in several processes at once
SINGLE_THREADED_MODEL_FAMILIES = ("nomic",)

ProviderFactory = Callable[[], EmbeddingProvider]
WorkerFactory = Callable[[int], Executor]

T = TypeVar("T")

# Per-process provider, set by the pool initializer
_worker_provider: EmbeddingProvider | None = None


def _init_worker(provider_factory: ProviderFactory) -> None:
    global _worker_provider
    _worker_provider = provider_factory()


def _worker_ping() -> bool:
    return _worker_provider is not None


def _embed_slice(batch_id: str, chunks: list[PendingChunk]) -> tuple[str, list[list[float]]]:
    """Embed one slice inside a worker and tag the result with its batch id."""
    if _worker_provider is None:
        raise RuntimeError("Embedding worker was not initialized")
    vectors = _worker_provider.encode([chunk.text for chunk in chunks])
    return batch_id, [list(vector) for vector in vectors]


def terminate_worker(worker: Executor) -> None:
    """Shut a worker down without waiting and kill its live processes.

    A process stuck in a slice would otherwise keep running until the slice
    finishes, and the executor's exit hook joins it at interpreter exit.
    """
    processes = list((getattr(worker, "_processes", None) or {}).values())
    worker.shutdown(wait=False, cancel_futures=True)
    for process in processes:
        if process.is_alive():
            logger.debug("Killing embedding worker process %s", process.pid)
            process.kill()


def partition(items: Sequence[T], parts: int) -> list[list[T]]:
    """Split items into `parts` contiguous slices whose sizes differ by at most one."""
    if parts < 1:
        raise ValueError(f"parts must be positive, got {parts}")
    base, extra = divmod(len(items), parts)
    slices = []
    start = 0
    for index in range(parts):
        size = base + (1 if index < extra else 0)
        slices.append(list(items[start : start + size]))
        start += size
    return slices


def uses_single_threaded_model(model_name: str) -> bool:
    name = model_name.lower()
    return any(family in name for family in SINGLE_THREADED_MODEL_FAMILIES)


def process_worker_factory(provider_factory: ProviderFactory) -> WorkerFactory:
    """Build single-process executors that each load their own provider."""
    context = multiprocessing.get_context("spawn")

    def make_worker(index: int) -> Executor:
        return ProcessPoolExecutor(
            max_workers=1,
            mp_context=context,
            initializer=_init_worker,
            initargs=(provider_factory,),
        )

    return make_worker


class EmbeddingOrchestrator:
    """Distributes chunk embedding across worker processes.

    Usage:
        orchestrator = EmbeddingOrchestrator(provider, throttle, provider_factory=factory)
        await orchestrator.start()
        results = await orchestrator.embed_batch(chunks)
        orchestrator.shutdown()

    Without a started pool every call runs single-threaded on `provider`.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        throttle: ResourceThrottle | None = None,
        worker_threads: int | str = "auto",
        provider_factory: ProviderFactory | None = None,
        worker_factory: WorkerFactory | None = None,
        expected_dimension: int | None = None,
        batch_timeout: float = DEFAULT_BATCH_TIMEOUT,
        init_timeout: float = WORKER_INIT_TIMEOUT,
    ):
        """Initialize the orchestrator.

        Args:
            provider: Provider used in this process (single-threaded path)
            throttle: Resource throttle bounding the worker count
            worker_threads: Requested worker count or "auto"
            provider_factory: Picklable callable building a provider in a worker
            worker_factory: Creates the executor for worker slot i
            expected_dimension: Vectors of any other length are failures
            batch_timeout: Seconds before a worker slice is abandoned
            init_timeout: Seconds allowed for worker warm-up
        """
        self.provider = provider
        self.throttle = throttle or ResourceThrottle()
        self.worker_threads = worker_threads
        self.expected_dimension = expected_dimension
        self.batch_timeout = batch_timeout
        self.init_timeout = init_timeout

        if worker_factory is None and provider_factory is not None:
            worker_factory = process_worker_factory(provider_factory)
        self._worker_factory = worker_factory
        self._workers: list[Executor | None] = []

    @property
    def num_workers(self) -> int:
        return len(self._workers)

    @property
    def is_parallel(self) -> bool:
        return bool(self._workers)

    def resolve_worker_count(self) -> int:
        """Workers to start: min(requested, throttle budget, cores), or 0."""
        if uses_single_threaded_model(self.provider.get_model_name()):
            logger.info(
                "Single-threaded mode: %s is not loaded in parallel workers",
                self.provider.get_model_name(),
            )
            return 0
        count = self.throttle.get_worker_count(self.worker_threads)
        return count if count > 1 else 0

    async def start(self, warm_up: bool = True) -> int:
        """Start the worker pool.

        Args:
            warm_up: Wait until every worker has loaded its model

        Returns:
            Number of workers running (0 means single-threaded)
        """
        if self._workers:
            return len(self._workers)
        if self._worker_factory is None:
            logger.info("Single-threaded mode: no worker factory configured")
            return 0

        count = self.resolve_worker_count()
        if count == 0:
            logger.info("Single-threaded embedding mode")
            return 0

        logger.info("Starting %d embedding workers", count)
        self._workers = [None] * count
        try:
            for index in range(count):
                self._spawn(index)
        except (OSError, RuntimeError) as e:
            logger.warning("Failed to start embedding workers: %s; using single-threaded mode", e)
            self.shutdown(wait=False)
            return 0

        if warm_up:
            loop = asyncio.get_running_loop()
            pings = [
                asyncio.wrap_future(worker.submit(_worker_ping), loop=loop)
                for worker in self._workers
                if worker is not None
            ]
            try:
                await asyncio.wait_for(asyncio.gather(*pings), timeout=self.init_timeout)
            except Exception as e:
                logger.warning(
                    "Embedding worker initialization failed (%s); using single-threaded mode",
                    str(e) or type(e).__name__,
                )
                self.shutdown(wait=False)
                return 0

        logger.info("%d embedding workers ready", len(self._workers))
        return len(self._workers)

    def _spawn(self, index: int) -> Executor:
        worker = self._worker_factory(index)
        self._workers[index] = worker
        return worker

    def _discard(self, index: int) -> None:
        worker = self._workers[index]
        self._workers[index] = None
        if worker is not None:
            terminate_worker(worker)

    def shutdown(self, wait: bool = True) -> None:
        """Stop every worker.

        With wait=False, worker processes still busy with a slice are killed
        so the interpreter is not held open by the pool's exit hook.
        """
        for worker in self._workers:
            if worker is None:
                continue
            if wait:
                worker.shutdown(wait=True, cancel_futures=True)
            else:
                terminate_worker(worker)
        self._workers = []

    def _result(self, chunk: PendingChunk, vector: list[float]) -> EmbeddedChunk:
        if self.expected_dimension is not None and len(vector) != self.expected_dimension:
            return EmbeddedChunk.failed(
                chunk,
                f"vector dimension {len(vector)} does not match {self.expected_dimension}",
            )
        return EmbeddedChunk(
            file=chunk.file,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            content=chunk.text,
            vector=list(vector),
        )

    async def embed_batch(self, chunks: Sequence[PendingChunk]) -> list[EmbeddedChunk]:
        """Embed chunks across the worker pool.

        Result order is not guaranteed to follow input order. Every input
        chunk appears exactly once in the output, either with a vector or
        with success=False and an error.
        """
        if not chunks:
            return []
        if not self._workers:
            return await self.embed_single_threaded(chunks)

        loop = asyncio.get_running_loop()
        failed: list[PendingChunk] = []
        dispatched = []

        for index, part in enumerate(partition(chunks, len(self._workers))):
            if not part:
                continue
            batch_id = f"batch-{index}-{time.monotonic_ns()}"
            try:
                worker = self._workers[index] or self._spawn(index)
                future = worker.submit(_embed_slice, batch_id, part)
            except (BrokenProcessPool, OSError, RuntimeError) as e:
                logger.warning("Worker %d unavailable: %s", index, e)
                self._discard(index)
                failed.extend(part)
                continue
            logger.debug("Worker %d: processing %d chunks", index, len(part))
            dispatched.append((index, batch_id, part, asyncio.wrap_future(future, loop=loop)))

        outcomes = await asyncio.gather(
            *(self._collect(index, batch_id, part, fut) for index, batch_id, part, fut in dispatched)
        )

        results: list[EmbeddedChunk] = []
        for (_, _, part, _), vectors in zip(dispatched, outcomes):
            if vectors is None:
                failed.extend(part)
            else:
                results.extend(self._result(chunk, vector) for chunk, vector in zip(part, vectors))

        if failed:
            logger.warning("Retrying %d chunks with single-threaded fallback", len(failed))
            results.extend(await self.embed_single_threaded(failed))
        return results

    async def _collect(
        self,
        index: int,
        batch_id: str,
        part: list[PendingChunk],
        future: asyncio.Future,
    ) -> list[list[float]] | None:
        """Await one worker slice; None means the slice must be recomputed."""
        try:
            returned_id, vectors = await asyncio.wait_for(future, timeout=self.batch_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Worker %d timed out after %.0fs, falling back to single-threaded for this batch",
                index,
                self.batch_timeout,
            )
            self._discard(index)
            return None
        except BrokenProcessPool as e:
            logger.warning("Worker %d crashed: %s", index, e)
            self._discard(index)
            return None
        except Exception as e:
            logger.warning("Worker %d error: %s", index, e)
            return None

        if returned_id != batch_id or len(vectors) != len(part):
            logger.warning("Worker %d returned a mismatched result for %s", index, batch_id)
            return None
        return vectors

    async def embed_single_threaded(self, chunks: Sequence[PendingChunk]) -> list[EmbeddedChunk]:
        """Embed chunks one at a time in this process, isolating failures."""
        results: list[EmbeddedChunk] = []
        for chunk in chunks:
            try:
                vector = await self.provider.embed(chunk.text)
            except Exception as e:
                logger.warning(
                    "Failed to embed chunk %s:%d-%d: %s",
                    chunk.file,
                    chunk.start_line,
                    chunk.end_line,
                    e,
                )
                results.append(EmbeddedChunk.failed(chunk, str(e)))
                continue
            results.append(self._result(chunk, vector))
        return results
