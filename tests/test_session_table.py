from __future__ import annotations

import asyncio

import pytest
from fakes import FakeSinkFactory, ManualClock

from aioaudiobox.errors import SinkUnavailableError, StreamConflictError
from aioaudiobox.models.session import HistoryRecord
from aioaudiobox.models.types import EndReason, SinkState, StartResult
from aioaudiobox.server.grace import GraceTimer
from aioaudiobox.server.registry import ConnectionRegistry
from aioaudiobox.server.relay import MediaRelayAdapter
from aioaudiobox.server.session import StreamSessionTable


class _Harness:
    def __init__(self) -> None:
        self.factory = FakeSinkFactory()
        self.clock = ManualClock()
        self.registry = ConnectionRegistry()
        self.relay = MediaRelayAdapter(self.factory)
        self.ended: list[tuple[HistoryRecord, frozenset[str]]] = []
        self.table = StreamSessionTable(
            self.registry,
            self.relay,
            on_session_ended=lambda record, members: self.ended.append((record, members)),
            clock=self.clock,
        )


def _idle_timer() -> GraceTimer:
    return GraceTimer(asyncio.get_running_loop(), 3600, lambda timer: None)


@pytest.mark.asyncio
async def test_create_session() -> None:
    h = _Harness()
    result = await h.table.create_or_resume("demo", "A", "desc", "x", "user-1")
    assert result is StartResult.CREATED

    status = h.table.get("demo")
    assert status is not None
    assert status.title == "A"
    assert status.owner_connection_id == "x"
    assert status.owner_user_id == "user-1"
    assert status.listener_count == 0
    assert status.start_time == h.clock.now
    assert status.sink_state is SinkState.ALIVE
    assert not status.pending_teardown
    assert h.registry.members_of("demo") == {"x"}
    assert h.factory.created == 1


@pytest.mark.asyncio
async def test_missing_user_is_anonymous() -> None:
    h = _Harness()
    await h.table.create_or_resume("demo", "A", "", "x")
    status = h.table.get("demo")
    assert status is not None
    assert status.owner_user_id == "anonymous"


@pytest.mark.asyncio
async def test_at_most_one_session_per_stream() -> None:
    h = _Harness()
    results = await asyncio.gather(
        h.table.create_or_resume("demo", "A", "", "x", "user-1"),
        h.table.create_or_resume("demo", "A", "", "x", "user-1"),
    )
    assert sorted(r.value for r in results) == ["created", "resumed"]
    assert len(h.table) == 1
    assert h.factory.created == 1


@pytest.mark.asyncio
async def test_other_user_cannot_take_over_live_stream() -> None:
    h = _Harness()
    await h.table.create_or_resume("demo", "A", "", "x", "user-1")
    with pytest.raises(StreamConflictError) as err:
        await h.table.create_or_resume("demo", "Hijack", "", "z", "user-2")
    assert err.value.reason.value == "stream-id-in-use"

    status = h.table.get("demo")
    assert status is not None
    assert status.owner_connection_id == "x"
    assert status.title == "A"
    assert not h.registry.is_member("z", "demo")


@pytest.mark.asyncio
async def test_sink_failure_rolls_back_creation() -> None:
    h = _Harness()
    h.factory.fail = True
    with pytest.raises(SinkUnavailableError):
        await h.table.create_or_resume("demo", "A", "", "x", "user-1")

    assert "demo" not in h.table
    assert h.table.get("demo") is None
    assert h.registry.members_of("demo") == frozenset()
    assert h.relay.sink_state("demo") is SinkState.ABSENT
    assert h.ended == []

    h.factory.fail = False
    assert await h.table.create_or_resume("demo", "A", "", "x", "user-1") is StartResult.CREATED


@pytest.mark.asyncio
async def test_listener_counts_never_negative_and_track_peak() -> None:
    h = _Harness()
    await h.table.create_or_resume("demo", "A", "", "x")

    for listener in ("y1", "y2", "y3"):
        admission = await h.table.admit_listener("demo", listener)
        assert admission is not None
        assert admission.newly_joined
    assert await h.table.release_listener("demo", "y1") == "x"
    assert await h.table.release_listener("demo", "y1") is None
    assert await h.table.release_listener("demo", "y2") == "x"
    admission = await h.table.admit_listener("demo", "y4")
    assert admission is not None

    status = h.table.get("demo")
    assert status is not None
    assert status.listener_count == 2
    assert status.peak_listener_count == 3

    assert await h.table.decrement_listener("demo") == 1
    assert await h.table.decrement_listener("demo") == 0
    assert await h.table.decrement_listener("demo") == 0
    assert await h.table.increment_listener("demo") == 3
    assert await h.table.increment_listener("missing") is None


@pytest.mark.asyncio
async def test_admit_listener_edge_cases() -> None:
    h = _Harness()
    assert await h.table.admit_listener("missing", "y") is None
    await h.table.create_or_resume("demo", "A", "", "x")

    assert await h.table.admit_listener("demo", "x") is None

    first = await h.table.admit_listener("demo", "y")
    second = await h.table.admit_listener("demo", "y")
    assert first is not None and first.newly_joined
    assert second is not None and not second.newly_joined
    status = h.table.get("demo")
    assert status is not None
    assert status.listener_count == 1


@pytest.mark.asyncio
async def test_resume_keeps_start_time_counters_and_sink() -> None:
    h = _Harness()
    await h.table.create_or_resume("demo", "A", "", "x", "user-1")
    await h.table.admit_listener("demo", "y")
    sink = h.relay.get_sink("demo")
    before = h.table.get("demo")
    assert before is not None

    timer = _idle_timer()
    assert await h.table.begin_grace("demo", "x", lambda stream_id: timer)
    status = h.table.get("demo")
    assert status is not None and status.pending_teardown
    assert not h.registry.is_member("x", "demo")

    h.clock.advance(10)
    result = await h.table.create_or_resume("demo", "Other title", "", "x2", "user-1")
    assert result is StartResult.RESUMED
    assert timer.cancelled

    after = h.table.get("demo")
    assert after is not None
    assert after.start_time == before.start_time
    assert after.listener_count == before.listener_count
    assert after.peak_listener_count == before.peak_listener_count
    assert after.title == "A"
    assert after.owner_connection_id == "x2"
    assert not after.pending_teardown
    assert h.relay.get_sink("demo") is sink
    assert h.registry.members_of("demo") == {"x2", "y"}
    assert h.ended == []


@pytest.mark.asyncio
async def test_dead_sink_forces_fresh_session() -> None:
    h = _Harness()
    await h.table.create_or_resume("demo", "A", "", "x", "user-1")
    await h.table.admit_listener("demo", "y")
    old_sink = h.factory.latest("demo")
    old_sink.crash()
    status = h.table.get("demo")
    assert status is not None
    assert status.sink_state is SinkState.DEAD

    h.clock.advance(5)
    result = await h.table.create_or_resume("demo", "B", "", "x", "user-1")
    assert result is StartResult.CREATED

    assert len(h.ended) == 1
    record, members = h.ended[0]
    assert record.reason is EndReason.SINK_LOST
    assert record.duration == 5
    assert members == {"x", "y"}

    status = h.table.get("demo")
    assert status is not None
    assert status.title == "B"
    assert status.listener_count == 0
    assert status.start_time == h.clock.now
    assert h.factory.latest("demo") is not old_sink
    assert old_sink.closed


@pytest.mark.asyncio
async def test_only_owner_mutates() -> None:
    h = _Harness()
    await h.table.create_or_resume("demo", "A", "desc", "x")
    await h.table.admit_listener("demo", "z")

    assert await h.table.update_metadata("demo", "z", title="hack") is None
    assert await h.table.end_session("demo", EndReason.OWNER_ENDED, caller_connection_id="z") is None
    status = h.table.get("demo")
    assert status is not None
    assert status.title == "A"
    assert h.ended == []

    updated = await h.table.update_metadata("demo", "x", description="new")
    assert updated is not None
    assert updated.title == "A"
    assert updated.description == "new"


@pytest.mark.asyncio
async def test_end_session_once() -> None:
    h = _Harness()
    await h.table.create_or_resume("demo", "A", "", "x", "user-1")
    await h.table.admit_listener("demo", "y")
    await h.table.admit_listener("demo", "y2")
    await h.table.release_listener("demo", "y2")
    h.clock.advance(90.7)

    record = await h.table.end_session("demo", EndReason.OWNER_ENDED, caller_connection_id="x")
    assert record is not None
    assert record.duration == 90
    assert record.peak_listener_count == 2
    assert record.owner_user_id == "user-1"
    assert record.end_time == h.clock.now

    assert await h.table.end_session("demo", EndReason.OWNER_ENDED) is None
    assert len(h.ended) == 1
    assert h.ended[0][1] == {"x", "y"}
    assert h.registry.members_of("demo") == frozenset()
    assert h.relay.sink_state("demo") is SinkState.ABSENT
    assert h.factory.latest("demo").closed


@pytest.mark.asyncio
async def test_begin_grace_ignores_non_owner_and_repeat() -> None:
    h = _Harness()
    await h.table.create_or_resume("demo", "A", "", "x")
    await h.table.admit_listener("demo", "y")

    assert not await h.table.begin_grace("demo", "y", lambda stream_id: _idle_timer())
    assert not await h.table.begin_grace("missing", "x", lambda stream_id: _idle_timer())
    timer = _idle_timer()
    assert await h.table.begin_grace("demo", "x", lambda stream_id: timer)
    assert not await h.table.begin_grace("demo", "x", lambda stream_id: _idle_timer())
    timer.cancel()


@pytest.mark.asyncio
async def test_expire_grace_requires_current_timer() -> None:
    h = _Harness()
    await h.table.create_or_resume("demo", "A", "", "x", "user-1")
    timer = _idle_timer()
    await h.table.begin_grace("demo", "x", lambda stream_id: timer)

    assert await h.table.expire_grace("demo", _idle_timer()) is None
    assert "demo" in h.table

    record = await h.table.expire_grace("demo", timer)
    assert record is not None
    assert record.reason is EndReason.OWNER_GRACE_EXPIRED
    assert await h.table.expire_grace("demo", timer) is None
    assert len(h.ended) == 1


@pytest.mark.asyncio
async def test_restore_sink_for_owner_only() -> None:
    h = _Harness()
    await h.table.create_or_resume("demo", "A", "", "x")
    h.factory.latest("demo").crash()

    assert not await h.table.restore_sink("demo", "z")
    assert h.relay.sink_state("demo") is SinkState.DEAD
    assert await h.table.restore_sink("demo", "x")
    assert h.relay.sink_state("demo") is SinkState.ALIVE
    assert h.factory.created == 2


@pytest.mark.asyncio
async def test_list_active_and_close() -> None:
    h = _Harness()
    await h.table.create_or_resume("b-stream", "B", "", "x1")
    h.clock.advance(1)
    await h.table.create_or_resume("a-stream", "A", "", "x2")
    await h.table.admit_listener("a-stream", "y")

    active = h.table.list_active()
    assert [s.stream_id for s in active] == ["b-stream", "a-stream"]
    assert active[1].listener_count == 1
    assert h.table.streams_owned_by("x2") == ["a-stream"]
    assert h.table.owner_of("b-stream") == "x1"

    records = await h.table.close()
    assert {r.stream_id for r in records} == {"a-stream", "b-stream"}
    assert all(r.reason is EndReason.SERVER_SHUTDOWN for r in records)
    assert len(h.table) == 0
    assert h.table.list_active() == []


@pytest.mark.asyncio
async def test_session_ended_callback_errors_are_contained() -> None:
    registry = ConnectionRegistry()
    relay = MediaRelayAdapter(FakeSinkFactory())

    def _boom(record: HistoryRecord, members: frozenset[str]) -> None:
        raise RuntimeError("observer failed")

    table = StreamSessionTable(registry, relay, on_session_ended=_boom)
    await table.create_or_resume("demo", "A", "", "x")
    record = await table.end_session("demo", EndReason.OWNER_ENDED)
    assert record is not None
    assert "demo" not in table
