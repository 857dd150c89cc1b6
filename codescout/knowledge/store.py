"""SQLite persistence for chunk vectors and file hashes.

The store keeps one database per workspace at <cache>/embeddings.db with two
tables: embeddings (one row per chunk, vector as a little-endian float32
blob) and file_hashes (one content digest per indexed file). Chunks are
addressed by the composite ChunkKey (file, start_line, end_line).

An older layout kept everything in embeddings.json + file-hashes.json. When
both files are present and the database is empty they are imported in one
transaction on load and renamed to *.backup.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

import numpy as np

from codescout.knowledge.types import ChunkKey, EmbeddedChunk, StoredChunk

logger = logging.getLogger(__name__)

DB_NAME = "embeddings.db"
LEGACY_VECTORS_FILE = "embeddings.json"
LEGACY_HASHES_FILE = "file-hashes.json"
BACKUP_SUFFIX = ".backup"

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS embeddings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file TEXT NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    content TEXT NOT NULL,
    vector BLOB NOT NULL,
    indexed_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS file_hashes (
    file TEXT PRIMARY KEY,
    hash TEXT NOT NULL,
    indexed_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_file ON embeddings(file);
CREATE INDEX IF NOT EXISTS idx_indexed_at ON embeddings(indexed_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_chunk_key ON embeddings(file, start_line, end_line);
"""

_INSERT_CHUNK = """
INSERT OR REPLACE INTO embeddings (file, start_line, end_line, content, vector, indexed_at)
VALUES (?, ?, ?, ?, ?, ?)
"""

_UPSERT_HASH = """
INSERT OR REPLACE INTO file_hashes (file, hash, indexed_at)
VALUES (?, ?, ?)
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


def vector_to_blob(vector: Iterable[float]) -> bytes:
    """Pack a vector as little-endian float32."""
    return np.asarray(vector, dtype="<f4").tobytes()


def blob_to_vector(blob: bytes) -> list[float]:
    """Unpack a float32 blob into a list of floats."""
    return np.frombuffer(blob, dtype="<f4").tolist()


class VectorStore:
    """Durable chunk/vector store for one workspace.

    All methods are no-ops returning empty results when the store is
    disabled. Writes go through one connection owned by the indexing side;
    the ranker only reads.

    Usage:
        store = VectorStore(config.cache_directory, dimension=384)
        store.load()
        store.add_batch_to_store(chunks)
        store.save()
        store.close()
    """

    def __init__(
        self,
        cache_directory: Path,
        enabled: bool = True,
        dimension: int | None = None,
    ):
        """Initialize the store.

        Args:
            cache_directory: Directory holding the database file
            enabled: When False nothing is persisted
            dimension: Expected vector length, validated on every write
        """
        self.cache_directory = Path(cache_directory)
        self.enabled = enabled
        self.dimension = dimension
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0

    @property
    def db_path(self) -> Path:
        return self.cache_directory / DB_NAME

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def load(self) -> None:
        """Open the database, create the schema, and migrate legacy JSON.

        Raises:
            RuntimeError: If the database cannot be opened or migrated
        """
        if not self.enabled or self._conn is not None:
            return

        try:
            self.cache_directory.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA cache_size=10000")
            conn.execute("PRAGMA temp_store=MEMORY")
            self._apply_schema(conn)
        except (sqlite3.Error, OSError) as e:
            raise RuntimeError(f"Failed to open vector store at {self.db_path}: {e}") from e

        self._conn = conn

        if self.has_legacy_cache() and self.get_vector_count() == 0:
            self.migrate_from_json()

        logger.info(
            "Loaded vector store: %d chunks from %d files",
            self.get_vector_count(),
            self.get_file_count(),
        )

    def _apply_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(SCHEMA_SQL)
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        current = row[0] if row and row[0] else 0
        if current < SCHEMA_VERSION:
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version, applied_at) VALUES (?, ?)",
                (SCHEMA_VERSION, _now_ms()),
            )
            conn.commit()
            logger.debug("Applied store schema version %d", SCHEMA_VERSION)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._tx_depth = 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group writes into one transaction.

        Nested use joins the outer transaction; only the outermost block
        commits or rolls back.
        """
        if self._conn is None:
            raise RuntimeError("Vector store not loaded. Call load() first.")

        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self._conn
            finally:
                self._tx_depth -= 1
            return

        self._tx_depth = 1
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        finally:
            self._tx_depth = 0

    # Legacy migration

    def has_legacy_cache(self) -> bool:
        return (self.cache_directory / LEGACY_VECTORS_FILE).exists()

    def migrate_from_json(self) -> int:
        """Import the legacy JSON pair and rename it to *.backup.

        Returns:
            Number of chunks imported (0 when the pair is incomplete)

        Raises:
            RuntimeError: If the legacy files cannot be parsed or imported
        """
        vectors_path = self.cache_directory / LEGACY_VECTORS_FILE
        hashes_path = self.cache_directory / LEGACY_HASHES_FILE
        if not vectors_path.exists() or not hashes_path.exists():
            logger.info("No complete JSON cache found to migrate")
            return 0

        try:
            entries = json.loads(vectors_path.read_text(encoding="utf-8"))
            hashes = json.loads(hashes_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise RuntimeError(f"Failed to read legacy JSON cache: {e}") from e

        logger.info("Migrating %d embeddings from JSON cache", len(entries))
        now = _now_ms()
        try:
            with self.transaction() as conn:
                conn.executemany(
                    _INSERT_CHUNK,
                    (
                        (
                            entry["file"],
                            entry["startLine"],
                            entry["endLine"],
                            entry["content"],
                            vector_to_blob(entry["vector"]),
                            now,
                        )
                        for entry in entries
                    ),
                )
                conn.executemany(
                    _UPSERT_HASH, ((file, digest, now) for file, digest in hashes.items())
                )
        except (sqlite3.Error, KeyError, TypeError) as e:
            raise RuntimeError(f"Failed to migrate legacy JSON cache: {e}") from e

        vectors_path.rename(vectors_path.with_name(vectors_path.name + BACKUP_SUFFIX))
        hashes_path.rename(hashes_path.with_name(hashes_path.name + BACKUP_SUFFIX))
        logger.info("JSON cache migrated and backed up")
        return len(entries)

    # Reads

    def get_vector_store(self) -> list[StoredChunk]:
        """All chunks ordered by file, then start line."""
        if self._conn is None:
            return []
        rows = self._conn.execute(
            "SELECT file, start_line, end_line, content, vector FROM embeddings "
            "ORDER BY file, start_line, end_line"
        ).fetchall()
        return [
            StoredChunk(
                file=row["file"],
                start_line=row["start_line"],
                end_line=row["end_line"],
                content=row["content"],
                vector=blob_to_vector(row["vector"]),
            )
            for row in rows
        ]

    def get_chunk(self, key: ChunkKey) -> StoredChunk | None:
        if self._conn is None:
            return None
        row = self._conn.execute(
            "SELECT file, start_line, end_line, content, vector FROM embeddings "
            "WHERE file = ? AND start_line = ? AND end_line = ?",
            tuple(key),
        ).fetchone()
        if row is None:
            return None
        return StoredChunk(
            file=row["file"],
            start_line=row["start_line"],
            end_line=row["end_line"],
            content=row["content"],
            vector=blob_to_vector(row["vector"]),
        )

    def get_file_chunks(self, file: str) -> list[ChunkKey]:
        if self._conn is None:
            return []
        rows = self._conn.execute(
            "SELECT file, start_line, end_line FROM embeddings WHERE file = ? "
            "ORDER BY start_line, end_line",
            (file,),
        ).fetchall()
        return [ChunkKey(row[0], row[1], row[2]) for row in rows]

    def get_vector_count(self) -> int:
        if self._conn is None:
            return 0
        return self._conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

    def get_file_count(self) -> int:
        if self._conn is None:
            return 0
        return self._conn.execute("SELECT COUNT(DISTINCT file) FROM embeddings").fetchone()[0]

    def get_file_hash(self, file: str) -> str | None:
        if self._conn is None:
            return None
        row = self._conn.execute("SELECT hash FROM file_hashes WHERE file = ?", (file,)).fetchone()
        return row[0] if row else None

    def get_all_file_hashes(self) -> dict[str, str]:
        if self._conn is None:
            return {}
        rows = self._conn.execute("SELECT file, hash FROM file_hashes").fetchall()
        return {row[0]: row[1] for row in rows}

    def get_size_bytes(self) -> int:
        """On-disk size of the database including WAL and shared-memory files."""
        total = 0
        for suffix in ("", "-wal", "-shm"):
            path = self.db_path.with_name(DB_NAME + suffix)
            if path.exists():
                total += path.stat().st_size
        return total

    # Writes

    def _row(self, chunk: EmbeddedChunk | StoredChunk, now: int) -> tuple:
        if chunk.start_line > chunk.end_line:
            raise ValueError(
                f"Invalid line range {chunk.start_line}-{chunk.end_line} for {chunk.file}"
            )
        if self.dimension is not None and len(chunk.vector) != self.dimension:
            raise ValueError(
                f"Vector for {chunk.file}:{chunk.start_line} has dimension "
                f"{len(chunk.vector)}, expected {self.dimension}"
            )
        return (
            chunk.file,
            chunk.start_line,
            chunk.end_line,
            chunk.content,
            vector_to_blob(chunk.vector),
            now,
        )

    def add_to_store(self, chunk: EmbeddedChunk | StoredChunk) -> None:
        """Insert one chunk, replacing any chunk with the same key."""
        if self._conn is None:
            return
        with self.transaction() as conn:
            conn.execute(_INSERT_CHUNK, self._row(chunk, _now_ms()))

    def add_batch_to_store(self, chunks: Iterable[EmbeddedChunk | StoredChunk]) -> int:
        """Insert chunks in a single transaction.

        Returns:
            Number of rows written
        """
        if self._conn is None:
            return 0
        now = _now_ms()
        rows = [self._row(chunk, now) for chunk in chunks]
        if not rows:
            return 0
        with self.transaction() as conn:
            conn.executemany(_INSERT_CHUNK, rows)
        return len(rows)

    def remove_file_from_store(self, file: str) -> int:
        """Delete every chunk of a file. Returns the number removed."""
        if self._conn is None:
            return 0
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM embeddings WHERE file = ?", (file,))
        return cursor.rowcount

    def remove_chunk(self, key: ChunkKey) -> bool:
        if self._conn is None:
            return False
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM embeddings WHERE file = ? AND start_line = ? AND end_line = ?",
                tuple(key),
            )
        return cursor.rowcount > 0

    def set_file_hash(self, file: str, digest: str) -> None:
        if self._conn is None:
            return
        with self.transaction() as conn:
            conn.execute(_UPSERT_HASH, (file, digest, _now_ms()))

    def set_file_hashes(self, hashes: dict[str, str]) -> None:
        """Record several file hashes in one transaction."""
        if self._conn is None or not hashes:
            return
        now = _now_ms()
        with self.transaction() as conn:
            conn.executemany(_UPSERT_HASH, ((f, h, now) for f, h in hashes.items()))

    def delete_file_hash(self, file: str) -> None:
        if self._conn is None:
            return
        with self.transaction() as conn:
            conn.execute("DELETE FROM file_hashes WHERE file = ?", (file,))

    def clear_file_hashes(self) -> None:
        if self._conn is None:
            return
        with self.transaction() as conn:
            conn.execute("DELETE FROM file_hashes")

    def set_vector_store(self, chunks: Iterable[EmbeddedChunk | StoredChunk]) -> None:
        """Atomically replace every stored chunk."""
        if self._conn is None:
            return
        now = _now_ms()
        rows = [self._row(chunk, now) for chunk in chunks]
        with self.transaction() as conn:
            conn.execute("DELETE FROM embeddings")
            conn.executemany(_INSERT_CHUNK, rows)

    def save(self) -> None:
        """Checkpoint the WAL so the main database file is up to date."""
        if self._conn is None:
            return
        try:
            self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
        except sqlite3.Error as e:
            logger.warning("WAL checkpoint failed: %s", e)

    def save_incremental(self) -> None:
        """Mid-run checkpoint.

        Every write is committed immediately, so nothing is pending here.
        """
        return

    def clear(self) -> None:
        """Delete all persisted chunks and hashes, then reopen an empty store.

        The database, its WAL/SHM files, and legacy JSON files (including
        backups) are removed. Other files in the cache directory are kept.
        """
        if not self.enabled:
            return
        self.close()
        names = [DB_NAME, f"{DB_NAME}-wal", f"{DB_NAME}-shm"]
        for legacy in (LEGACY_VECTORS_FILE, LEGACY_HASHES_FILE):
            names.extend([legacy, legacy + BACKUP_SUFFIX])
        for name in names:
            (self.cache_directory / name).unlink(missing_ok=True)
        logger.info("Cache cleared: %s", self.cache_directory)
        self.load()
