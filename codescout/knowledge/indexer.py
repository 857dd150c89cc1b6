"""Codebase indexing pipeline.

One run walks the workspace, prunes files that disappeared from it, and then
processes files in batches: each changed file (by MD5 of its bytes) loses its
old chunks, is re-chunked, embedded through the orchestrator, and written to
the store in one transaction per batch. Unchanged files are detected lazily,
batch by batch, so the whole project is never held in memory.

Only one run may be active at a time; a concurrent request returns a skipped
result instead of queueing. Watch mode re-indexes single files as watchdog
reports them.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import logging
import math
import os
import re
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from codescout.config import CACHE_DIR_NAME
from codescout.knowledge.chunker import Chunker, get_chunker
from codescout.knowledge.orchestrator import EmbeddingOrchestrator
from codescout.knowledge.store import VectorStore
from codescout.knowledge.throttle import ResourceThrottle
from codescout.knowledge.types import IndexingStatus, PendingChunk

if TYPE_CHECKING:
    from codescout.config import CodeScoutConfig

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], Awaitable[None] | None]

# "**/node_modules/**", "**/dist", "**/build/" -> directory name
_EXCLUDE_DIR_PATTERN = re.compile(r"^\*\*/([^/*]+)/?\*?\*?$")
_PLAIN_NAME_PATTERN = re.compile(r"^[^/*?\[\]]+$")


def hash_content(data: bytes) -> str:
    """Content digest used for change detection."""
    return hashlib.md5(data).hexdigest()


def extract_excluded_dirs(patterns: list[str]) -> set[str]:
    """Directory names to prune, taken from exclude patterns.

    Only "**/name/**" style patterns and bare names are understood; anything
    else is ignored. The cache directory is always excluded.
    """
    names = {CACHE_DIR_NAME}
    for pattern in patterns:
        match = _EXCLUDE_DIR_PATTERN.match(pattern.strip())
        if match:
            names.add(match.group(1))
        elif _PLAIN_NAME_PATTERN.match(pattern.strip()):
            names.add(pattern.strip())
    return names


def adaptive_batch_size(total_files: int, configured: int = 100) -> int:
    """Larger batches for larger projects."""
    if total_files > 10_000:
        return 500
    if total_files > 1_000:
        return 200
    return configured or 100


@dataclass
class IndexRunResult:
    """Summary of one indexing run."""

    skipped: bool = False
    reason: str | None = None
    files_processed: int = 0
    chunks_created: int = 0
    total_files: int = 0
    total_chunks: int = 0
    duration: float = 0.0
    message: str = ""
    files_unchanged: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    chunks_failed: int = 0
    files_pruned: int = 0

    def to_dict(self) -> dict[str, Any]:
        if self.skipped:
            return {"skipped": True, "reason": self.reason, "message": self.message}
        return {
            "skipped": False,
            "files_processed": self.files_processed,
            "chunks_created": self.chunks_created,
            "total_files": self.total_files,
            "total_chunks": self.total_chunks,
            "duration": self.duration,
            "message": self.message,
            "files_unchanged": self.files_unchanged,
            "files_skipped": self.files_skipped,
            "files_failed": self.files_failed,
            "chunks_failed": self.chunks_failed,
            "files_pruned": self.files_pruned,
        }


class _WatchHandler(FileSystemEventHandler):
    """Forwards watchdog events to the indexer's event loop."""

    def __init__(self, indexer: CodebaseIndexer, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.indexer = indexer
        self.loop = loop

    def _submit(self, coro: Coroutine[Any, Any, Any]) -> None:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(_log_watch_failure)

    def _changed(self, path: str) -> None:
        if self.indexer.should_index_path(path):
            self._submit(self.indexer.handle_file_changed(path))

    def _deleted(self, path: str) -> None:
        if self.indexer.should_index_path(path):
            self._submit(self.indexer.handle_file_deleted(path))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._changed(os.fsdecode(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._changed(os.fsdecode(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._deleted(os.fsdecode(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._deleted(os.fsdecode(event.src_path))
            self._changed(os.fsdecode(event.dest_path))


def _log_watch_failure(future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error("File watch handler failed: %s", error)


class CodebaseIndexer:
    """Discovers, chunks, embeds, and stores the files of one workspace.

    Usage:
        indexer = CodebaseIndexer(config, store, orchestrator)
        result = await indexer.index_all()
        print(result.message)
    """

    def __init__(
        self,
        config: CodeScoutConfig,
        store: VectorStore,
        orchestrator: EmbeddingOrchestrator,
        chunker: Chunker | None = None,
        throttle: ResourceThrottle | None = None,
        progress_callback: ProgressCallback | None = None,
    ):
        """Initialize the indexer.

        Args:
            config: Workspace configuration
            store: Vector store this indexer writes to
            orchestrator: Embedding orchestrator
            chunker: Chunking strategy (defaults to the configured mode)
            throttle: Inter-batch throttle (defaults to the orchestrator's)
            progress_callback: Receives (progress, total, message), sync or async
        """
        self.config = config
        self.store = store
        self.orchestrator = orchestrator
        self.chunker = chunker or get_chunker(config)
        self.throttle = throttle or orchestrator.throttle
        self.progress_callback = progress_callback
        self.status = IndexingStatus()

        self._indexing = False
        # Serializes store writes between indexing batches and watch events
        self._write_lock = asyncio.Lock()
        self._observer = None
        self._extensions = {ext.lstrip(".").lower() for ext in config.index.file_extensions}
        self._excluded_dirs = extract_excluded_dirs(config.index.exclude_patterns)

    @property
    def root(self) -> Path:
        return self.config.workspace

    @property
    def is_indexing(self) -> bool:
        return self._indexing

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    # Discovery

    def _has_indexed_extension(self, path: str) -> bool:
        return Path(path).suffix.lstrip(".").lower() in self._extensions

    def should_index_path(self, path: str | Path) -> bool:
        """Whether a path falls inside the indexed set (extension + directories)."""
        path = Path(path)
        try:
            relative = path.relative_to(self.root)
        except ValueError:
            return False
        if any(part in self._excluded_dirs for part in relative.parts[:-1]):
            return False
        return self._has_indexed_extension(str(path))

    def discover_files(self) -> list[str]:
        """List indexable files under the workspace, sorted.

        Raises:
            FileNotFoundError: If the workspace root does not exist
        """
        if not self.root.is_dir():
            raise FileNotFoundError(f"Workspace root not found: {self.root}")

        start = time.monotonic()
        files: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if d not in self._excluded_dirs)
            for name in filenames:
                if self._has_indexed_extension(name):
                    files.append(os.path.join(dirpath, name))
        files.sort()

        logger.info(
            "File discovery: %d files in %.0fms", len(files), (time.monotonic() - start) * 1000
        )
        return files

    def _prune(self, current_files: list[str]) -> int:
        """Drop chunks and hashes of files that are no longer discovered."""
        current = set(current_files)
        pruned = 0
        for file in self.store.get_all_file_hashes():
            if file not in current:
                self.store.remove_file_from_store(file)
                self.store.delete_file_hash(file)
                pruned += 1
        if pruned:
            logger.info("Pruned %d deleted or excluded files from the index", pruned)
        return pruned

    # Progress

    async def _notify_progress(self, progress: int, total: int, message: str) -> None:
        if self.progress_callback is None:
            return
        try:
            result = self.progress_callback(progress, total, message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.debug("Progress listener failed: %s", e)

    # Full runs

    async def index_all(self, force: bool = False) -> IndexRunResult:
        """Index the workspace.

        Args:
            force: Clear the whole store first and re-embed every file

        Returns:
            Run summary; skipped=True when another run is in progress

        Raises:
            FileNotFoundError: If the workspace root does not exist
        """
        if self._indexing:
            logger.info("Indexing already in progress, skipping concurrent request")
            return IndexRunResult(
                skipped=True,
                reason="Indexing already in progress",
                message="Indexing already in progress",
            )

        self._indexing = True
        self.status.reset()
        self.status.in_progress = True
        started = time.monotonic()
        result = IndexRunResult()

        try:
            files = self.discover_files()

            async with self._write_lock:
                if force:
                    logger.info("Force reindex requested: clearing stored chunks and hashes")
                    self.store.set_vector_store([])
                    self.store.clear_file_hashes()
                else:
                    result.files_pruned = self._prune(files)

            if not files:
                self.store.save()
                result.message = "No files found to index"
                await self._notify_progress(100, 100, result.message)
                return result

            await self._notify_progress(5, 100, f"Discovered {len(files)} files")
            await self._run_batches(files, result, started)

            result.duration = round(time.monotonic() - started, 1)
            if result.files_processed:
                result.message = (
                    f"Indexed {result.files_processed} files ({result.chunks_created} chunks, "
                    f"{result.files_unchanged} unchanged) in {result.duration}s"
                )
            else:
                result.message = f"All {result.files_unchanged} files up to date"
            logger.info("Indexing complete: %s", result.message)

            self.status.percentage = 100
            await self._notify_progress(100, 100, result.message)

            async with self._write_lock:
                self.store.save()
            result.total_chunks = self.store.get_vector_count()
            result.total_files = self.store.get_file_count()
            return result
        finally:
            self.orchestrator.shutdown(wait=False)
            self._indexing = False
            self.status.in_progress = False

    async def _run_batches(self, files: list[str], result: IndexRunResult, started: float) -> None:
        batch_size = adaptive_batch_size(len(files), self.config.index.batch_size)
        logger.info("Processing %d files (batch size %d)", len(files), batch_size)
        self.status.total_files = len(files)

        workers = await self.orchestrator.start()
        logger.info(
            "%s embedding mode", f"Multi-process ({workers} workers)" if workers else "Single-threaded"
        )

        save_interval = max(1, self.config.index.incremental_save_interval)
        batch_counter = 0

        for offset in range(0, len(files), batch_size):
            batch = files[offset : offset + batch_size]
            async with self._write_lock:
                written = await self._process_batch(batch, result)
            if written is not None:
                batch_counter += 1
                if batch_counter % save_interval == 0:
                    async with self._write_lock:
                        self.store.save_incremental()
                await self.throttle.throttled_batch()

            estimated = len(files) - result.files_unchanged - result.files_skipped
            estimated -= result.files_failed
            self.status.processed_files = result.files_processed
            self.status.total_files = max(estimated, result.files_processed)
            self.status.percentage = (
                math.floor(result.files_processed / estimated * 100) if estimated > 0 else 100
            )

            elapsed = max(time.monotonic() - started, 1e-6)
            progress = min(95, math.floor(10 + (offset + len(batch)) / len(files) * 85))
            await self._notify_progress(
                progress,
                100,
                f"Indexed {result.files_processed} files, {result.files_unchanged} unchanged "
                f"({result.files_processed / elapsed:.0f}/sec)",
            )

    async def _process_batch(self, batch: list[str], result: IndexRunResult) -> int | None:
        """Embed and store the changed files of one batch.

        Returns:
            Number of files whose hash was written, or None when the batch
            held no changed files
        """
        pending, hashes = self._prepare_batch(batch, result)
        if not pending and not hashes:
            return None

        results = await self.orchestrator.embed_batch(pending) if pending else []
        succeeded = [r for r in results if r.success]
        succeeded.sort(key=lambda r: r.key)
        failed_files = {r.file for r in results if not r.success}
        written = {f: h for f, h in hashes.items() if f not in failed_files}

        self.store.add_batch_to_store(succeeded)
        self.store.set_file_hashes(written)

        result.chunks_created += len(succeeded)
        result.chunks_failed += len(results) - len(succeeded)
        result.files_processed += len(written)
        result.files_failed += len(hashes) - len(written)
        return len(written)

    def _prepare_batch(
        self, batch: list[str], result: IndexRunResult
    ) -> tuple[list[PendingChunk], dict[str, str]]:
        """Read, hash, and chunk the changed files of one batch.

        Changed files lose their stored chunks and hash here, before
        embedding, so an interrupted run re-processes them next time.
        """
        pending: list[PendingChunk] = []
        hashes: dict[str, str] = {}

        for file in batch:
            try:
                stat = os.stat(file)
                if stat.st_size > self.config.index.max_file_size:
                    logger.debug("Skipped %s (too large: %d bytes)", file, stat.st_size)
                    result.files_skipped += 1
                    continue
                data = Path(file).read_bytes()
            except OSError as e:
                logger.warning("Error reading %s: %s", file, e)
                result.files_failed += 1
                continue

            digest = hash_content(data)
            if self.store.get_file_hash(file) == digest:
                result.files_unchanged += 1
                continue

            self.store.remove_file_from_store(file)
            self.store.delete_file_hash(file)

            content = data.decode("utf-8", errors="replace")
            for span in self.chunker.chunk(content, file):
                pending.append(PendingChunk(file, span.text, span.start_line, span.end_line))
            hashes[file] = digest

        return pending, hashes

    # Single files

    async def index_file(self, path: str | Path) -> int:
        """Re-index one file if its content changed.

        Waits for the indexing batch in flight, if any, to finish writing.

        Returns:
            Number of chunks written (0 when skipped, unchanged, or failed)
        """
        async with self._write_lock:
            return await self._index_file(path)

    async def _index_file(self, path: str | Path) -> int:
        file = os.path.abspath(path)
        try:
            stat = os.stat(file)
            if not os.path.isfile(file):
                return 0
            if stat.st_size > self.config.index.max_file_size:
                logger.debug("Skipped %s (too large: %d bytes)", file, stat.st_size)
                return 0
            data = Path(file).read_bytes()
        except OSError as e:
            logger.warning("Error indexing %s: %s", file, e)
            return 0

        digest = hash_content(data)
        if self.store.get_file_hash(file) == digest:
            logger.debug("Skipped %s (unchanged)", file)
            return 0

        self.store.remove_file_from_store(file)
        self.store.delete_file_hash(file)

        content = data.decode("utf-8", errors="replace")
        pending = [
            PendingChunk(file, span.text, span.start_line, span.end_line)
            for span in self.chunker.chunk(content, file)
        ]
        results = await self.orchestrator.embed_single_threaded(pending)
        succeeded = [r for r in results if r.success]
        self.store.add_batch_to_store(succeeded)
        if len(succeeded) == len(results):
            self.store.set_file_hash(file, digest)

        logger.info("Indexed %s (%d chunks)", file, len(succeeded))
        return len(succeeded)

    def remove_file(self, path: str | Path) -> None:
        """Forget a file's chunks and hash."""
        file = os.path.abspath(path)
        self.store.remove_file_from_store(file)
        self.store.delete_file_hash(file)

    # Watch mode

    async def handle_file_changed(self, path: str) -> int:
        logger.info("File changed: %s", path)
        async with self._write_lock:
            count = await self._index_file(path)
            self.store.save()
        return count

    async def handle_file_deleted(self, path: str) -> None:
        logger.info("File deleted: %s", path)
        async with self._write_lock:
            self.remove_file(path)
            self.store.save()

    def start_watching(self) -> None:
        """Watch the workspace and re-index files as they change.

        Must be called from the event loop that runs the indexer.
        """
        if self._observer is not None:
            return
        loop = asyncio.get_running_loop()
        observer = Observer()
        observer.daemon = True
        observer.schedule(_WatchHandler(self, loop), str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("Watching %s for changes", self.root)

    def stop_watching(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
        logger.info("Stopped watching %s", self.root)
