from __future__ import annotations

import asyncio
import logging
import stat
import sys
from pathlib import Path

import pytest

from aioaudiobox.errors import SinkUnavailableError
from aioaudiobox.server.sink import STDERR_TAIL_LINES, FfmpegHlsSink, ffmpeg_sink_factory

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


def _fake_ffmpeg(tmp_path: Path, body: str) -> str:
    """Write an executable standing in for ffmpeg; the playlist path is its last argument."""
    script = tmp_path / "fake-ffmpeg"
    script.write_text("#!/bin/sh\nfor last; do :; done\n" + body + "\n", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)


@pytest.mark.asyncio
async def test_missing_binary_is_unavailable(tmp_path: Path) -> None:
    factory = ffmpeg_sink_factory(str(tmp_path / "no-such-ffmpeg"), tmp_path / "hls")
    with pytest.raises(SinkUnavailableError):
        await factory("demo")


@pytest.mark.asyncio
async def test_chunks_reach_process_in_order(tmp_path: Path) -> None:
    ffmpeg = _fake_ffmpeg(tmp_path, 'cat > "$last"')
    sink = await FfmpegHlsSink.spawn("demo", ffmpeg_path=ffmpeg, output_dir=tmp_path / "hls")
    assert sink.alive

    for chunk in (b"one ", b"two ", b"three"):
        sink.write(chunk)
    sink.close()
    sink.close()
    await asyncio.wait_for(sink.wait_closed(), timeout=5)

    assert not sink.alive
    playlist = tmp_path / "hls" / "demo" / "index.m3u8"
    assert playlist.read_bytes() == b"one two three"


@pytest.mark.asyncio
async def test_process_exit_marks_sink_dead(tmp_path: Path) -> None:
    ffmpeg = _fake_ffmpeg(tmp_path, "echo boom >&2; exit 3")
    sink = await FfmpegHlsSink.spawn("demo", ffmpeg_path=ffmpeg, output_dir=tmp_path / "hls")
    await asyncio.wait_for(sink.wait_closed(), timeout=5)

    assert not sink.alive
    # Writes to a dead sink are ignored.
    sink.write(b"late")


@pytest.mark.asyncio
async def test_exit_log_keeps_only_stderr_tail(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    ffmpeg = _fake_ffmpeg(
        tmp_path, 'i=0; while [ $i -lt 200 ]; do echo "line $i" >&2; i=$((i+1)); done; exit 3'
    )
    with caplog.at_level(logging.WARNING, logger="aioaudiobox.server.sink"):
        sink = await FfmpegHlsSink.spawn("demo", ffmpeg_path=ffmpeg, output_dir=tmp_path / "hls")
        await asyncio.wait_for(sink.wait_closed(), timeout=5)

    assert not sink.alive
    exits = [r.getMessage() for r in caplog.records if "exited with code 3" in r.getMessage()]
    assert len(exits) == 1
    assert "line 199" in exits[0]
    assert f"line {199 - STDERR_TAIL_LINES + 1}" in exits[0]
    assert f"line {199 - STDERR_TAIL_LINES}\n" not in exits[0]
    assert "line 0\n" not in exits[0]
