"""Bridges broadcaster audio chunks to one transcoding sink per stream."""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from aioaudiobox.errors import SinkUnavailableError
from aioaudiobox.models.types import SinkState

from .sink import SinkFactory, TranscoderSink

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFERED_CHUNKS = 256


class MediaRelayAdapter:
    """
    Forwards raw encoded audio to the transcoding sink of each stream.

    Chunks that arrive while a stream has no usable sink are kept in a bounded
    FIFO and flushed, in arrival order, as soon as a sink is available. The
    adapter never inspects the audio bytes.
    """

    _sinks: dict[str, TranscoderSink]
    """Stream id -> current sink, alive or dead."""
    _pending: dict[str, deque[bytes]]
    """Stream id -> chunks waiting for a sink."""
    _dropped: dict[str, int]
    """Stream id -> chunks discarded because the buffer was full."""

    def __init__(
        self,
        sink_factory: SinkFactory,
        *,
        max_buffered_chunks: int = DEFAULT_MAX_BUFFERED_CHUNKS,
    ) -> None:
        """
        Initialize the adapter.

        Args:
            sink_factory: Creates and starts a sink for a stream id.
            max_buffered_chunks: Capacity of the per-stream pending FIFO.
        """
        if max_buffered_chunks <= 0:
            raise ValueError("max_buffered_chunks must be positive")
        self._sink_factory = sink_factory
        self._max_buffered_chunks = max_buffered_chunks
        self._sinks = {}
        self._pending = {}
        self._dropped = {}

    def sink_state(self, stream_id: str) -> SinkState:
        """Return whether the stream's sink is absent, alive or dead."""
        sink = self._sinks.get(stream_id)
        if sink is None:
            return SinkState.ABSENT
        return SinkState.ALIVE if sink.alive else SinkState.DEAD

    def is_alive(self, stream_id: str) -> bool:
        """Check whether the stream has a sink accepting bytes."""
        return self.sink_state(stream_id) is SinkState.ALIVE

    def get_sink(self, stream_id: str) -> TranscoderSink | None:
        """Return the current sink of a stream, if any."""
        return self._sinks.get(stream_id)

    def buffered_chunks(self, stream_id: str) -> int:
        """Return how many chunks are waiting for a sink."""
        return len(self._pending.get(stream_id, ()))

    async def ensure_sink(self, stream_id: str) -> TranscoderSink:
        """
        Return a live sink for the stream, creating one if needed.

        An existing live sink is returned unchanged so a resumed broadcast
        keeps feeding the same transcoder. A dead sink is replaced.

        Raises:
            SinkUnavailableError: If the sink could not be created.
        """
        sink = self._sinks.get(stream_id)
        if sink is not None and sink.alive:
            return sink
        if sink is not None:
            logger.info("Replacing dead sink for %s", stream_id)
            sink.close()
            del self._sinks[stream_id]

        try:
            sink = await self._sink_factory(stream_id)
        except SinkUnavailableError:
            raise
        except Exception as err:
            raise SinkUnavailableError(stream_id, f"Sink creation failed: {err}") from err

        self._sinks[stream_id] = sink
        self._flush(stream_id, sink)
        return sink

    def forward(self, stream_id: str, chunk: bytes) -> None:
        """Write a chunk to the stream's sink, or buffer it until there is one."""
        sink = self._sinks.get(stream_id)
        if sink is not None and sink.alive:
            if self._pending.get(stream_id):
                # Keep order if a flush is still outstanding.
                self._flush(stream_id, sink)
            sink.write(chunk)
            return
        self._buffer(stream_id, chunk)

    def release_sink(self, stream_id: str) -> TranscoderSink | None:
        """
        Signal end of input to the stream's sink and forget it.

        Safe to call when there is no sink. Buffered chunks are discarded.

        Returns:
            The released sink, so callers may await its shutdown.
        """
        self._pending.pop(stream_id, None)
        dropped = self._dropped.pop(stream_id, 0)
        if dropped:
            logger.info("Stream %s dropped %d stale chunks in total", stream_id, dropped)
        sink = self._sinks.pop(stream_id, None)
        if sink is not None:
            logger.debug("Releasing sink for %s", stream_id)
            sink.close()
        return sink

    async def close(self, timeout: float = 5.0) -> None:
        """Release every sink and wait for them to exit."""
        sinks = [
            sink
            for sink in (self.release_sink(stream_id) for stream_id in list(self._sinks))
            if sink is not None
        ]
        self._pending.clear()
        if not sinks:
            return
        try:
            async with asyncio.timeout(timeout):
                await asyncio.gather(
                    *(sink.wait_closed() for sink in sinks), return_exceptions=True
                )
        except TimeoutError:
            logger.warning("Timeout waiting for %d sink(s) to exit", len(sinks))

    def _buffer(self, stream_id: str, chunk: bytes) -> None:
        pending = self._pending.get(stream_id)
        if pending is None:
            pending = self._pending[stream_id] = deque()
        if len(pending) >= self._max_buffered_chunks:
            pending.popleft()
            dropped = self._dropped.get(stream_id, 0) + 1
            self._dropped[stream_id] = dropped
            if dropped == 1 or dropped % 100 == 0:
                logger.warning(
                    "Pending buffer for %s is full, dropped %d oldest chunk(s)",
                    stream_id,
                    dropped,
                )
        pending.append(chunk)

    def _flush(self, stream_id: str, sink: TranscoderSink) -> None:
        pending = self._pending.pop(stream_id, None)
        if not pending:
            return
        logger.debug("Flushing %d buffered chunk(s) to sink for %s", len(pending), stream_id)
        while pending:
            sink.write(pending.popleft())
