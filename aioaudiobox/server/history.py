"""Persistence of finished sessions."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from pathlib import Path

from aioaudiobox.models.session import HistoryRecord
from aioaudiobox.models.types import EndReason

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1024


class HistoryStore(ABC):
    """Append/query storage for history records."""

    @abstractmethod
    async def append(self, record: HistoryRecord) -> None:
        """Persist one record."""

    @abstractmethod
    async def query(self, limit: int, owner_user_id: str | None = None) -> list[HistoryRecord]:
        """Return up to limit records, newest first, optionally for one user."""

    async def close(self) -> None:  # noqa: B027
        """Release resources held by the store."""


class MemoryHistoryStore(HistoryStore):
    """Keeps the most recent records in memory."""

    def __init__(self, max_records: int = 10_000) -> None:
        """Initialize an empty store holding at most max_records."""
        self._records: deque[HistoryRecord] = deque(maxlen=max_records)

    async def append(self, record: HistoryRecord) -> None:
        """Store a record, evicting the oldest when full."""
        self._records.append(record)

    async def query(self, limit: int, owner_user_id: str | None = None) -> list[HistoryRecord]:
        """Return the newest records."""
        result: list[HistoryRecord] = []
        # Newest insert first on equal end times, as the SQLite store orders by id.
        for record in sorted(reversed(self._records), key=lambda r: r.end_time, reverse=True):
            if owner_user_id is not None and record.owner_user_id != owner_user_id:
                continue
            result.append(record)
            if len(result) >= limit:
                break
        return result


_SCHEMA = """
CREATE TABLE IF NOT EXISTS stream_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stream_id TEXT NOT NULL,
    title TEXT,
    description TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    duration INTEGER NOT NULL,
    peak_listeners INTEGER DEFAULT 0,
    user_id TEXT,
    ended_reason TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_stream_history_user ON stream_history (user_id, end_time);
"""


class SqliteHistoryStore(HistoryStore):
    """
    Stores history records in a SQLite database file.

    sqlite3 calls are blocking, so they run in the loop's default executor,
    serialized by a lock around the single connection.
    """

    def __init__(self, path: str | Path) -> None:
        """Open (and create if needed) the database at path."""
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        logger.info("History database opened at %s", self._path)

    async def append(self, record: HistoryRecord) -> None:
        """Insert a record."""
        await asyncio.get_running_loop().run_in_executor(None, self._insert, record)

    async def query(self, limit: int, owner_user_id: str | None = None) -> list[HistoryRecord]:
        """Return the newest records."""
        return await asyncio.get_running_loop().run_in_executor(
            None, self._select, limit, owner_user_id
        )

    async def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def _insert(self, record: HistoryRecord) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO stream_history (stream_id, title, description, start_time, "
                "end_time, duration, peak_listeners, user_id, ended_reason) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.stream_id,
                    record.title,
                    record.description,
                    record.start_time.isoformat(),
                    record.end_time.isoformat(),
                    record.duration,
                    record.peak_listener_count,
                    record.owner_user_id,
                    record.reason.value,
                ),
            )
            self._conn.commit()

    def _select(self, limit: int, owner_user_id: str | None) -> list[HistoryRecord]:
        sql = (
            "SELECT stream_id, title, description, start_time, end_time, duration, "
            "peak_listeners, user_id, ended_reason FROM stream_history"
        )
        params: tuple[object, ...] = ()
        if owner_user_id is not None:
            sql += " WHERE user_id = ?"
            params = (owner_user_id,)
        sql += " ORDER BY end_time DESC, id DESC LIMIT ?"
        params = (*params, limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            HistoryRecord(
                stream_id=row[0],
                title=row[1] or "",
                description=row[2] or "",
                start_time=datetime.fromisoformat(row[3]),
                end_time=datetime.fromisoformat(row[4]),
                duration=row[5],
                peak_listener_count=row[6] or 0,
                owner_user_id=row[7] or "",
                reason=EndReason(row[8]) if row[8] else EndReason.OWNER_ENDED,
            )
            for row in rows
        ]


class HistoryRecorder:
    """
    Fire-and-forget writer in front of a HistoryStore.

    record() never blocks: records go into a bounded queue drained by one
    worker task. Store failures are logged and the record is dropped; there
    are no synchronous retries. close() drains what is queued.
    """

    _queue: asyncio.Queue[HistoryRecord]
    _worker_task: asyncio.Task[None] | None

    def __init__(self, store: HistoryStore, *, max_pending: int = DEFAULT_QUEUE_SIZE) -> None:
        """
        Initialize the recorder.

        Args:
            store: Where records are persisted.
            max_pending: Records queued before new ones are dropped.
        """
        self._store = store
        self._queue = asyncio.Queue(maxsize=max_pending)
        self._worker_task = None
        self._closing = False

    @property
    def store(self) -> HistoryStore:
        """The backing store."""
        return self._store

    @property
    def pending(self) -> int:
        """Records queued but not yet written."""
        return self._queue.qsize()

    def start(self) -> None:
        """Start the worker task on the running loop."""
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.get_running_loop().create_task(self._worker())

    def record(self, record: HistoryRecord) -> bool:
        """
        Queue a record for persistence.

        Returns:
            False if the record was dropped.
        """
        if self._closing:
            logger.error("History recorder is closed, dropping record for %s", record.stream_id)
            return False
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            logger.error("History queue full, dropping record for %s", record.stream_id)
            return False
        if self._worker_task is None:
            self.start()
        return True

    async def query(self, limit: int, owner_user_id: str | None = None) -> list[HistoryRecord]:
        """Return the newest persisted records."""
        return await self._store.query(limit, owner_user_id)

    async def _worker(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self._store.append(record)
                logger.debug("History record written for %s", record.stream_id)
            except Exception:
                logger.exception("Failed to persist history record for %s", record.stream_id)
            finally:
                self._queue.task_done()

    async def close(self, timeout: float = 5.0) -> None:
        """Drain queued records, then stop the worker and close the store."""
        self._closing = True
        if self._worker_task is not None and not self._queue.empty():
            try:
                async with asyncio.timeout(timeout):
                    await self._queue.join()
            except TimeoutError:
                logger.warning(
                    "Timeout draining history queue, %d record(s) lost", self._queue.qsize()
                )
        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
        await self._store.close()
