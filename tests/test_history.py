from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from aioaudiobox.models.session import HistoryRecord
from aioaudiobox.models.types import EndReason
from aioaudiobox.server.history import (
    HistoryRecorder,
    HistoryStore,
    MemoryHistoryStore,
    SqliteHistoryStore,
)

_BASE = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _record(stream_id: str, minute: int, user: str = "user-1") -> HistoryRecord:
    start = _BASE + timedelta(minutes=minute)
    return HistoryRecord(
        stream_id=stream_id,
        title=f"Title {stream_id}",
        description="",
        start_time=start,
        end_time=start + timedelta(seconds=30),
        duration=30,
        peak_listener_count=minute,
        owner_user_id=user,
        reason=EndReason.OWNER_ENDED,
    )


class _FailingStore(HistoryStore):
    def __init__(self) -> None:
        self.attempts = 0

    async def append(self, record: HistoryRecord) -> None:
        self.attempts += 1
        raise OSError("disk full")

    async def query(self, limit: int, owner_user_id: str | None = None) -> list[HistoryRecord]:
        return []


class _SlowStore(MemoryHistoryStore):
    async def append(self, record: HistoryRecord) -> None:
        await asyncio.sleep(0.01)
        await super().append(record)


@pytest.mark.asyncio
async def test_memory_store_newest_first_and_filter() -> None:
    store = MemoryHistoryStore()
    await store.append(_record("a", 1))
    await store.append(_record("c", 3, user="user-2"))
    await store.append(_record("b", 2))

    assert [r.stream_id for r in await store.query(10)] == ["c", "b", "a"]
    assert [r.stream_id for r in await store.query(10, "user-1")] == ["b", "a"]
    assert [r.stream_id for r in await store.query(1)] == ["c"]


@pytest.mark.asyncio
async def test_memory_store_evicts_oldest() -> None:
    store = MemoryHistoryStore(max_records=2)
    for minute in range(3):
        await store.append(_record(f"s{minute}", minute))
    assert [r.stream_id for r in await store.query(10)] == ["s2", "s1"]


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["memory", "sqlite"])
async def test_equal_end_times_newest_insert_first(tmp_path: Path, backend: str) -> None:
    store: HistoryStore
    if backend == "memory":
        store = MemoryHistoryStore()
    else:
        store = SqliteHistoryStore(tmp_path / "history.db")
    for stream_id in ("first", "second", "third"):
        await store.append(_record(stream_id, 5))
    assert [r.stream_id for r in await store.query(10)] == ["third", "second", "first"]
    await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_roundtrip(tmp_path: Path) -> None:
    store = SqliteHistoryStore(tmp_path / "db" / "history.db")
    first = _record("a", 1)
    await store.append(first)
    await store.append(_record("b", 2, user="user-2"))

    records = await store.query(10)
    assert [r.stream_id for r in records] == ["b", "a"]
    assert records[1] == first

    only_user_1 = await store.query(10, "user-1")
    assert [r.stream_id for r in only_user_1] == ["a"]
    await store.close()

    reopened = SqliteHistoryStore(tmp_path / "db" / "history.db")
    assert len(await reopened.query(10)) == 2
    await reopened.close()


@pytest.mark.asyncio
async def test_recorder_drains_on_close() -> None:
    store = _SlowStore()
    recorder = HistoryRecorder(store)
    recorder.start()
    for minute in range(5):
        assert recorder.record(_record(f"s{minute}", minute))

    await recorder.close()
    assert len(await store.query(10)) == 5
    assert not recorder.record(_record("late", 9))


@pytest.mark.asyncio
async def test_recorder_drops_when_queue_full() -> None:
    store = MemoryHistoryStore()
    recorder = HistoryRecorder(store, max_pending=2)
    assert recorder.record(_record("a", 1))
    assert recorder.record(_record("b", 2))
    assert not recorder.record(_record("c", 3))
    assert recorder.pending == 2

    await recorder.close()
    assert [r.stream_id for r in await store.query(10)] == ["b", "a"]


@pytest.mark.asyncio
async def test_recorder_survives_store_failures() -> None:
    store = _FailingStore()
    recorder = HistoryRecorder(store)
    recorder.record(_record("a", 1))
    recorder.record(_record("b", 2))
    await recorder.close()
    assert store.attempts == 2
