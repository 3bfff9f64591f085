"""
Record Store — validated, append-only persistence for conversation records.

``RecordStore`` owns validation and result shaping; the actual bytes live in a
``RecordBackend``. Two backends ship here:

- ``SQLiteRecordBackend``: a local sqlite file. Blocking calls run on one
  dedicated worker thread so the event loop never waits on disk.
- ``MemoryRecordBackend``: a dict, for embedding hosts that want no disk and
  for tests.

Both can be given a ``max_records`` quota, reported as ``CapacityExceededError``
exactly like a full disk.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import math
import sqlite3
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from .exceptions import CapacityExceededError, QuickPromptError, StorageFailure, ValidationError
from .protocols import RecordBackend
from .records import (
    DEFAULT_EMBEDDING_DIMENSIONS,
    ConversationRecord,
    RecordIdFactory,
    RecordSummary,
    coerce_embedding,
    utc_now,
    validate_record,
)

logger = logging.getLogger("quickprompt.store")

T = TypeVar("T")

DB_FILENAME = "quickprompt_history.sqlite3"


@dataclass(frozen=True)
class SaveResult:
    """Outcome of ``RecordStore.save``. Failures are returned, never raised."""

    ok: bool
    error: QuickPromptError | None = None

    @property
    def capacity_exceeded(self) -> bool:
        return isinstance(self.error, CapacityExceededError)


# ---------------------------------------------------------------------------
# MemoryRecordBackend
# ---------------------------------------------------------------------------


class MemoryRecordBackend:
    """In-process backend. Records vanish with the process."""

    def __init__(self, max_records: int | None = None) -> None:
        if max_records is not None and max_records < 0:
            raise ValueError("max_records must be >= 0")
        self.max_records = max_records
        self._records: dict[int, ConversationRecord] = {}

    async def add(self, record: ConversationRecord) -> None:
        if self.max_records is not None and len(self._records) >= self.max_records:
            raise CapacityExceededError()
        if record.id in self._records:
            raise StorageFailure(f"Failed to save conversation: duplicate id {record.id}")
        self._records[record.id] = record

    async def recent(self, limit: int) -> list[RecordSummary]:
        newest = sorted(self._records, reverse=True)[:limit]
        return [self._records[record_id].summary() for record_id in newest]

    async def all(self) -> list[ConversationRecord]:
        return [self._records[record_id] for record_id in sorted(self._records)]

    async def count(self) -> int:
        return len(self._records)

    async def clear(self) -> int:
        removed = len(self._records)
        self._records.clear()
        return removed

    async def max_id(self) -> int:
        return max(self._records, default=0)

    async def close(self) -> None:
        return None

    def __repr__(self) -> str:
        return f"MemoryRecordBackend(max_records={self.max_records}, count={len(self._records)})"


# ---------------------------------------------------------------------------
# SQLiteRecordBackend
# ---------------------------------------------------------------------------


def _is_disk_full(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None and code == getattr(sqlite3, "SQLITE_FULL", 13):
        return True
    return "database or disk is full" in str(exc).lower()


class SQLiteRecordBackend:
    """sqlite-backed record storage with an optional record or byte quota."""

    def __init__(
        self,
        path: str | Path,
        *,
        max_records: int | None = None,
        max_bytes: int | None = None,
    ) -> None:
        if max_records is not None and max_records < 0:
            raise ValueError("max_records must be >= 0")
        self.path = Path(path)
        self.max_records = max_records
        self.max_bytes = max_bytes
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="quickprompt-store")
        self._conn: sqlite3.Connection | None = None

    async def _run(self, func: Any, /, *args: Any) -> T:
        loop = asyncio.get_running_loop()
        bound = functools.partial(self._guarded, func, *args)
        return await loop.run_in_executor(self._executor, bound)

    def _guarded(self, func: Any, *args: Any) -> Any:
        try:
            return func(self._connection(), *args)
        except QuickPromptError:
            raise
        except sqlite3.Error as exc:
            if _is_disk_full(exc):
                raise CapacityExceededError() from exc
            raise StorageFailure(f"Storage operation failed: {exc}") from exc
        except OSError as exc:
            raise StorageFailure(f"Storage unavailable: {exc}") from exc

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._tune_pragmas(conn)
            self._init_schema(conn)
            self._conn = conn
        return self._conn

    def _tune_pragmas(self, conn: sqlite3.Connection) -> None:
        """Tune sqlite for local low-latency usage."""
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA temp_store = MEMORY")
        if self.max_bytes is not None:
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            conn.execute(f"PRAGMA max_page_count = {max(1, self.max_bytes // page_size)}")

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY,
                prompt TEXT NOT NULL,
                response TEXT NOT NULL,
                model_version TEXT NOT NULL,
                created_at TEXT NOT NULL,
                embedding_dim INTEGER,
                embedding_json TEXT
            );
            """
        )
        conn.commit()

    @staticmethod
    def _summary_from_row(row: sqlite3.Row) -> RecordSummary:
        return RecordSummary(
            id=int(row["id"]),
            prompt=str(row["prompt"]),
            response=str(row["response"]),
            model_version=str(row["model_version"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            embedding_dim=row["embedding_dim"],
        )

    @staticmethod
    def _record_from_row(row: sqlite3.Row) -> ConversationRecord:
        raw = row["embedding_json"]
        embedding = None
        if raw:
            try:
                embedding = tuple(float(v) for v in json.loads(raw))
            except (json.JSONDecodeError, TypeError, ValueError):
                logger.warning("[QuickPrompt Store] Dropping unreadable embedding for id %s.", row["id"])
        return ConversationRecord(
            id=int(row["id"]),
            prompt=str(row["prompt"]),
            response=str(row["response"]),
            model_version=str(row["model_version"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            embedding=embedding,
        )

    def _add_sync(self, conn: sqlite3.Connection, record: ConversationRecord) -> None:
        if self.max_records is not None:
            (existing,) = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()
            if existing >= self.max_records:
                raise CapacityExceededError()
        embedding_json = None if record.embedding is None else json.dumps(list(record.embedding))
        try:
            conn.execute(
                """
                INSERT INTO conversations
                    (id, prompt, response, model_version, created_at, embedding_dim, embedding_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.prompt,
                    record.response,
                    record.model_version,
                    record.created_at.isoformat(),
                    record.embedding_dim,
                    embedding_json,
                ),
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise

    def _recent_sync(self, conn: sqlite3.Connection, limit: int) -> list[RecordSummary]:
        rows = conn.execute(
            """
            SELECT id, prompt, response, model_version, created_at, embedding_dim
            FROM conversations
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [self._summary_from_row(row) for row in rows]

    def _all_sync(self, conn: sqlite3.Connection) -> list[ConversationRecord]:
        rows = conn.execute("SELECT * FROM conversations ORDER BY id ASC").fetchall()
        return [self._record_from_row(row) for row in rows]

    def _count_sync(self, conn: sqlite3.Connection) -> int:
        (count,) = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()
        return int(count)

    def _clear_sync(self, conn: sqlite3.Connection) -> int:
        (count,) = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()
        conn.execute("DELETE FROM conversations")
        conn.commit()
        return int(count)

    def _max_id_sync(self, conn: sqlite3.Connection) -> int:
        (max_id,) = conn.execute("SELECT MAX(id) FROM conversations").fetchone()
        return int(max_id or 0)

    async def add(self, record: ConversationRecord) -> None:
        await self._run(self._add_sync, record)

    async def recent(self, limit: int) -> list[RecordSummary]:
        return await self._run(self._recent_sync, limit)

    async def all(self) -> list[ConversationRecord]:
        return await self._run(self._all_sync)

    async def count(self) -> int:
        return await self._run(self._count_sync)

    async def clear(self) -> int:
        return await self._run(self._clear_sync)

    async def max_id(self) -> int:
        return await self._run(self._max_id_sync)

    async def close(self) -> None:
        """Close the sqlite connection and stop the worker thread."""
        conn, self._conn = self._conn, None
        if conn is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(self._executor, conn.close)
        self._executor.shutdown(wait=False)

    def __repr__(self) -> str:
        return (
            f"SQLiteRecordBackend(path={str(self.path)!r}, max_records={self.max_records}, "
            f"max_bytes={self.max_bytes})"
        )


# ---------------------------------------------------------------------------
# RecordStore
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class RecordStore:
    """Validates conversation records and persists them through a backend."""

    def __init__(
        self,
        backend: RecordBackend | None = None,
        *,
        accepted_dimensions: Iterable[int] | None = DEFAULT_EMBEDDING_DIMENSIONS,
    ) -> None:
        self.backend = backend if backend is not None else MemoryRecordBackend()
        self.accepted_dimensions = (
            None if accepted_dimensions is None else frozenset(accepted_dimensions)
        )
        self._ids = RecordIdFactory()

    @classmethod
    def open(cls, path: str | Path, **kwargs: Any) -> RecordStore:
        """Open (or create) a sqlite-backed store. Quota kwargs go to the backend."""
        backend_kwargs = {k: kwargs.pop(k) for k in ("max_records", "max_bytes") if k in kwargs}
        return cls(SQLiteRecordBackend(path, **backend_kwargs), **kwargs)

    async def initialize(self) -> None:
        """Seed the id factory past every stored id."""
        self._ids.observe(await self._read(self.backend.max_id(), "open conversation store"))

    def next_id(self) -> int:
        return self._ids()

    def build_record(
        self,
        prompt: str,
        response: str,
        model_version: str,
        embedding: Iterable[Any] | None = None,
    ) -> ConversationRecord:
        return ConversationRecord(
            id=self.next_id(),
            prompt=prompt,
            response=response,
            model_version=model_version,
            created_at=utc_now(),
            embedding=coerce_embedding(embedding),
        )

    async def save(self, record: ConversationRecord) -> SaveResult:
        try:
            validate_record(record, accepted_dimensions=self.accepted_dimensions)
        except ValidationError as exc:
            return SaveResult(ok=False, error=exc)

        try:
            await self.backend.add(record)
        except CapacityExceededError as exc:
            logger.warning("[QuickPrompt Store] %s", exc)
            return SaveResult(ok=False, error=exc)
        except StorageFailure as exc:
            logger.error("[QuickPrompt Store] Failed to save conversation %s: %s", record.id, exc)
            return SaveResult(ok=False, error=exc)
        except Exception as exc:
            logger.error("[QuickPrompt Store] Failed to save conversation %s.", record.id, exc_info=True)
            return SaveResult(ok=False, error=StorageFailure(f"Failed to save conversation: {exc}"))
        self._ids.observe(record.id)
        return SaveResult(ok=True)

    async def recent(self, limit: int = 10) -> list[RecordSummary]:
        """Newest-first summaries, at most *limit* of them."""
        if limit <= 0:
            return []
        return await self._read(self.backend.recent(limit), "retrieve history")

    async def clear_all(self) -> int:
        """Delete every record. Returns how many were removed."""
        return await self._read(self.backend.clear(), "clear history")

    async def count(self) -> int:
        return await self._read(self.backend.count(), "count conversations")

    async def similar(self, embedding: Sequence[float], limit: int = 5) -> list[tuple[float, RecordSummary]]:
        """Stored records ranked by cosine similarity to *embedding*, best first.

        Only records whose vector has the same dimensionality are considered.
        """
        if limit <= 0 or not embedding:
            return []
        records = await self._read(self.backend.all(), "search history")
        scored = [
            (cosine_similarity(embedding, record.embedding), record.summary())
            for record in records
            if record.embedding is not None and len(record.embedding) == len(embedding)
        ]
        scored.sort(key=lambda pair: (pair[0], pair[1].id), reverse=True)
        return scored[:limit]

    async def export_jsonl(self, target: str | Path) -> int:
        """Write every record, oldest first, as JSON Lines. Returns the record count."""
        records = await self._read(self.backend.all(), "export history")
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            for record in records:
                handle.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
        return len(records)

    async def close(self) -> None:
        await self.backend.close()

    async def _read(self, awaitable: Any, action: str) -> Any:
        try:
            return await awaitable
        except StorageFailure:
            raise
        except Exception as exc:
            raise StorageFailure(f"Failed to {action}: {exc}") from exc

    def __repr__(self) -> str:
        return f"RecordStore(backend={self.backend!r})"
