from __future__ import annotations

import pytest
from fakes import FakeSinkFactory

from aioaudiobox.errors import SinkUnavailableError
from aioaudiobox.models.types import SinkState
from aioaudiobox.server.relay import MediaRelayAdapter


@pytest.mark.asyncio
async def test_forward_preserves_order_across_buffering() -> None:
    factory = FakeSinkFactory()
    relay = MediaRelayAdapter(factory)

    relay.forward("demo", b"1")
    relay.forward("demo", b"2")
    assert relay.sink_state("demo") is SinkState.ABSENT
    assert relay.buffered_chunks("demo") == 2

    sink = await relay.ensure_sink("demo")
    relay.forward("demo", b"3")
    assert factory.latest("demo").chunks == [b"1", b"2", b"3"]
    assert relay.buffered_chunks("demo") == 0
    assert relay.get_sink("demo") is sink


@pytest.mark.asyncio
async def test_dead_sink_reverts_to_buffering_and_is_rebuilt() -> None:
    factory = FakeSinkFactory()
    relay = MediaRelayAdapter(factory)
    first = await relay.ensure_sink("demo")
    relay.forward("demo", b"a")
    factory.latest("demo").crash()
    assert relay.sink_state("demo") is SinkState.DEAD

    relay.forward("demo", b"b")
    relay.forward("demo", b"c")
    assert relay.buffered_chunks("demo") == 2

    second = await relay.ensure_sink("demo")
    assert second is not first
    assert relay.sink_state("demo") is SinkState.ALIVE
    assert factory.latest("demo").chunks == [b"b", b"c"]
    assert factory.sinks[0].chunks == [b"a"]
    assert factory.sinks[0].closed


@pytest.mark.asyncio
async def test_live_sink_is_reused() -> None:
    factory = FakeSinkFactory()
    relay = MediaRelayAdapter(factory)
    first = await relay.ensure_sink("demo")
    assert await relay.ensure_sink("demo") is first
    assert factory.created == 1


@pytest.mark.asyncio
async def test_buffer_overflow_drops_oldest() -> None:
    factory = FakeSinkFactory()
    relay = MediaRelayAdapter(factory, max_buffered_chunks=3)
    for i in range(5):
        relay.forward("demo", bytes([i]))
    assert relay.buffered_chunks("demo") == 3

    await relay.ensure_sink("demo")
    assert factory.latest("demo").chunks == [b"\x02", b"\x03", b"\x04"]


@pytest.mark.asyncio
async def test_factory_errors_become_sink_unavailable() -> None:
    async def _broken(stream_id: str):
        raise FileNotFoundError("ffmpeg")

    relay = MediaRelayAdapter(_broken)
    with pytest.raises(SinkUnavailableError):
        await relay.ensure_sink("demo")
    assert relay.sink_state("demo") is SinkState.ABSENT


@pytest.mark.asyncio
async def test_release_sink_is_safe_without_sink() -> None:
    factory = FakeSinkFactory()
    relay = MediaRelayAdapter(factory)
    assert relay.release_sink("demo") is None

    relay.forward("demo", b"stale")
    await relay.ensure_sink("other")
    released = relay.release_sink("other")
    assert released is not None and factory.latest("other").closed
    relay.release_sink("demo")
    assert relay.buffered_chunks("demo") == 0


@pytest.mark.asyncio
async def test_close_releases_every_sink() -> None:
    factory = FakeSinkFactory()
    relay = MediaRelayAdapter(factory)
    await relay.ensure_sink("a")
    await relay.ensure_sink("b")
    await relay.close()
    assert all(sink.closed for sink in factory.sinks)
    assert relay.sink_state("a") is SinkState.ABSENT


def test_buffer_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        MediaRelayAdapter(FakeSinkFactory(), max_buffered_chunks=0)
