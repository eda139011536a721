"""Transcoding sinks that turn a broadcaster's byte stream into HLS segments."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import suppress
from pathlib import Path

from aioaudiobox.errors import SinkUnavailableError

logger = logging.getLogger(__name__)

MAX_PENDING_WRITES = 1024
"""Chunks queued towards a sink's stdin before the sink is considered stuck."""

STDERR_TAIL_LINES = 20
"""Lines of transcoder stderr kept for the exit log."""


class TranscoderSink(ABC):
    """
    An external consumer of raw encoded audio for one stream.

    write() and close() never block: bytes are handed to the sink's own
    writer, which preserves call order.
    """

    stream_id: str

    @property
    @abstractmethod
    def alive(self) -> bool:
        """Whether the sink still accepts bytes."""

    @abstractmethod
    def write(self, chunk: bytes) -> None:
        """Queue a chunk for the sink."""

    @abstractmethod
    def close(self) -> None:
        """Signal end of input. Safe to call more than once."""

    @abstractmethod
    async def wait_closed(self) -> None:
        """Wait until the sink has consumed its input and exited."""


SinkFactory = Callable[[str], Awaitable[TranscoderSink]]
"""Creates and starts a sink for a stream id; raises SinkUnavailableError on failure."""


class FfmpegHlsSink(TranscoderSink):
    """Pipes a stream into an ffmpeg process producing an HLS playlist."""

    _process: asyncio.subprocess.Process
    _to_write: asyncio.Queue[bytes | None]
    _writer_task: asyncio.Task[None]
    _watch_task: asyncio.Task[None]
    _alive: bool
    _closing: bool

    def __init__(self, stream_id: str, process: asyncio.subprocess.Process) -> None:
        """Wrap an already started ffmpeg process. Use FfmpegHlsSink.spawn instead."""
        self.stream_id = stream_id
        self._process = process
        self._logger = logger.getChild(stream_id)
        self._to_write = asyncio.Queue(maxsize=MAX_PENDING_WRITES)
        self._alive = True
        self._closing = False
        loop = asyncio.get_running_loop()
        self._writer_task = loop.create_task(self._writer())
        self._watch_task = loop.create_task(self._watch())

    @classmethod
    async def spawn(
        cls,
        stream_id: str,
        *,
        ffmpeg_path: str,
        output_dir: Path,
        segment_seconds: int = 2,
        playlist_size: int = 6,
    ) -> FfmpegHlsSink:
        """
        Start ffmpeg for a stream.

        Raises:
            SinkUnavailableError: If the ffmpeg binary cannot be started.
        """
        stream_dir = output_dir / stream_id
        cmd = [
            ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            "pipe:0",
            "-c:a",
            "aac",
            "-b:a",
            "128k",
            "-f",
            "hls",
            "-hls_time",
            str(segment_seconds),
            "-hls_list_size",
            str(playlist_size),
            "-hls_flags",
            "delete_segments+append_list",
            str(stream_dir / "index.m3u8"),
        ]
        try:
            stream_dir.mkdir(parents=True, exist_ok=True)
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            raise SinkUnavailableError(stream_id, f"Cannot start {ffmpeg_path}: {err}") from err
        logger.info("Started transcoder for %s (pid %s)", stream_id, process.pid)
        return cls(stream_id, process)

    @property
    def alive(self) -> bool:
        """Whether the ffmpeg process is still accepting input."""
        return self._alive and not self._closing

    def write(self, chunk: bytes) -> None:
        """Queue a chunk for ffmpeg's stdin."""
        if not self.alive:
            return
        try:
            self._to_write.put_nowait(chunk)
        except asyncio.QueueFull:
            self._logger.error("Transcoder is not keeping up, dropping chunk")

    def close(self) -> None:
        """Signal end of input to ffmpeg."""
        if self._closing:
            return
        self._closing = True
        try:
            self._to_write.put_nowait(None)
        except asyncio.QueueFull:
            # Could not enqueue EOF behind a stuck writer; stop it right away.
            self._writer_task.cancel()
            self._close_stdin()

    async def wait_closed(self) -> None:
        """Wait for ffmpeg to flush its last segment and exit."""
        with suppress(asyncio.CancelledError):
            await self._writer_task
        await self._watch_task

    def _close_stdin(self) -> None:
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    async def _writer(self) -> None:
        """Write queued chunks to ffmpeg in order."""
        stdin = self._process.stdin
        assert stdin is not None
        try:
            while True:
                chunk = await self._to_write.get()
                if chunk is None:
                    break
                stdin.write(chunk)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            self._logger.warning("Transcoder closed its input")
            self._alive = False
        finally:
            self._close_stdin()

    async def _watch(self) -> None:
        """Mark the sink dead when the process exits."""
        tail: deque[bytes] = deque(maxlen=STDERR_TAIL_LINES)
        if self._process.stderr is not None:
            while True:
                try:
                    line = await self._process.stderr.readline()
                except ValueError:
                    # Over-long line; readline already discarded it.
                    continue
                if not line:
                    break
                tail.append(line)
        await self._process.wait()
        self._alive = False
        if not self._writer_task.done():
            self._writer_task.cancel()
        returncode = self._process.returncode
        if self._closing and returncode == 0:
            self._logger.info("Transcoder finished")
        else:
            self._logger.warning(
                "Transcoder exited with code %s: %s",
                returncode,
                b"".join(tail).decode("utf-8", errors="replace").strip(),
            )


def ffmpeg_sink_factory(ffmpeg_path: str, output_dir: Path) -> SinkFactory:
    """Return a SinkFactory spawning one ffmpeg HLS process per stream."""

    async def _factory(stream_id: str) -> TranscoderSink:
        return await FfmpegHlsSink.spawn(
            stream_id, ffmpeg_path=ffmpeg_path, output_dir=output_dir
        )

    return _factory
