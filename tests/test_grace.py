from __future__ import annotations

import asyncio

import pytest
from fakes import FakeSinkFactory, ManualClock

from aioaudiobox.models.session import HistoryRecord
from aioaudiobox.models.types import EndReason, StartResult
from aioaudiobox.server.grace import DisconnectGraceManager, GraceTimer
from aioaudiobox.server.registry import ConnectionRegistry
from aioaudiobox.server.relay import MediaRelayAdapter
from aioaudiobox.server.session import StreamSessionTable


def _table(ended: list[HistoryRecord], clock: ManualClock | None = None) -> StreamSessionTable:
    return StreamSessionTable(
        ConnectionRegistry(),
        MediaRelayAdapter(FakeSinkFactory()),
        on_session_ended=lambda record, members: ended.append(record),
        clock=clock or ManualClock(),
    )


@pytest.mark.asyncio
async def test_timer_fires_once() -> None:
    fired: list[GraceTimer] = []
    timer = GraceTimer(asyncio.get_running_loop(), 0.01, fired.append)
    await asyncio.sleep(0.05)
    assert fired == [timer]
    assert timer.fired
    assert not timer.cancelled


@pytest.mark.asyncio
async def test_cancelled_timer_never_fires() -> None:
    fired: list[GraceTimer] = []
    timer = GraceTimer(asyncio.get_running_loop(), 0.01, fired.append)
    timer.cancel()
    await asyncio.sleep(0.05)
    assert fired == []
    assert timer.cancelled
    assert not timer.fired


@pytest.mark.asyncio
async def test_cancel_after_handle_was_due_wins() -> None:
    fired: list[GraceTimer] = []
    timer = GraceTimer(asyncio.get_running_loop(), 0, fired.append)
    timer.cancel()
    # Simulate the loop running a handle that was already scheduled.
    timer._fire()  # noqa: SLF001
    assert fired == []


@pytest.mark.asyncio
async def test_owner_not_back_in_time_ends_session() -> None:
    ended: list[HistoryRecord] = []
    clock = ManualClock()
    table = _table(ended, clock)
    grace = DisconnectGraceManager(table, grace_period_s=0.05)
    await table.create_or_resume("demo", "A", "", "x", "user-1")
    await table.admit_listener("demo", "y")
    clock.advance(42)

    assert await grace.owner_disconnected("demo", "x")
    status = table.get("demo")
    assert status is not None and status.pending_teardown

    await asyncio.sleep(0.2)
    await grace.close()
    assert "demo" not in table
    assert len(ended) == 1
    assert ended[0].reason is EndReason.OWNER_GRACE_EXPIRED
    assert ended[0].duration == 42
    assert ended[0].peak_listener_count == 1


@pytest.mark.asyncio
async def test_resume_before_expiry_keeps_session() -> None:
    ended: list[HistoryRecord] = []
    table = _table(ended)
    grace = DisconnectGraceManager(table, grace_period_s=0.05)
    await table.create_or_resume("demo", "A", "", "x", "user-1")

    await grace.owner_disconnected("demo", "x")
    assert await table.create_or_resume("demo", "A", "", "x2", "user-1") is StartResult.RESUMED
    await asyncio.sleep(0.2)
    await grace.close()

    assert "demo" in table
    assert ended == []


@pytest.mark.asyncio
async def test_listener_disconnect_starts_no_timer() -> None:
    ended: list[HistoryRecord] = []
    table = _table(ended)
    grace = DisconnectGraceManager(table, grace_period_s=0.01)
    await table.create_or_resume("demo", "A", "", "x")
    await table.admit_listener("demo", "y")

    assert not await grace.owner_disconnected("demo", "y")
    await asyncio.sleep(0.05)
    assert "demo" in table


@pytest.mark.asyncio
async def test_end_and_expiry_race_produces_one_teardown() -> None:
    ended: list[HistoryRecord] = []
    table = _table(ended)
    grace = DisconnectGraceManager(table, grace_period_s=0)
    await table.create_or_resume("demo", "A", "", "x")
    await grace.owner_disconnected("demo", "x")

    # The zero-delay timer is due; race it against an explicit end.
    results = await asyncio.gather(
        table.end_session("demo", EndReason.OWNER_ENDED),
        asyncio.sleep(0),
    )
    await asyncio.sleep(0.01)
    await grace.close()

    assert len(ended) == 1
    assert results[0] is None or results[0] is ended[0]
    assert "demo" not in table


@pytest.mark.asyncio
async def test_resume_and_expiry_race_never_both_win() -> None:
    for _ in range(20):
        ended: list[HistoryRecord] = []
        table = _table(ended)
        grace = DisconnectGraceManager(table, grace_period_s=0)
        await table.create_or_resume("demo", "A", "", "x", "user-1")
        await grace.owner_disconnected("demo", "x")

        result = await table.create_or_resume("demo", "A", "", "x2", "user-1")
        await asyncio.sleep(0.01)
        await grace.close()

        if result is StartResult.RESUMED:
            assert ended == []
            assert "demo" in table
        else:
            assert len(ended) == 1
            assert ended[0].reason is EndReason.OWNER_GRACE_EXPIRED
            assert "demo" in table


def test_negative_grace_period_is_rejected() -> None:
    with pytest.raises(ValueError):
        DisconnectGraceManager(_table([]), grace_period_s=-1)
