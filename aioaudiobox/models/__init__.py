"""Models for the AudioBox signaling protocol."""

from __future__ import annotations

__all__ = [
    "AUDIO_CHUNK_HEADER_FORMAT",
    "AUDIO_CHUNK_HEADER_SIZE",
    "ActiveStream",
    "AudioChunk",
    "BinaryMessageType",
    "ClientMessage",
    "EndReason",
    "HistoryRecord",
    "ListenerState",
    "ServerMessage",
    "SignalKind",
    "SinkState",
    "StartFailureReason",
    "StartResult",
    "StreamStatus",
    "core",
    "pack_audio_chunk",
    "session",
    "types",
    "unpack_audio_chunk",
]
import struct
from typing import NamedTuple

from . import core, session, types
from .core import validate_stream_id
from .session import ActiveStream, HistoryRecord, StreamStatus
from .types import (
    BinaryMessageType,
    ClientMessage,
    EndReason,
    ListenerState,
    ServerMessage,
    SignalKind,
    SinkState,
    StartFailureReason,
    StartResult,
)

# Audio chunk header (big-endian): message_type(1) + stream_id_length(2) = 3 bytes,
# followed by the UTF-8 stream id and the raw encoded audio.
AUDIO_CHUNK_HEADER_FORMAT = ">BH"
AUDIO_CHUNK_HEADER_SIZE = struct.calcsize(AUDIO_CHUNK_HEADER_FORMAT)


class AudioChunk(NamedTuple):
    """Decoded binary audio-chunk frame."""

    stream_id: str
    data: bytes


def pack_audio_chunk(stream_id: str, data: bytes) -> bytes:
    """
    Pack an audio chunk into a binary frame.

    Args:
        stream_id: Stream the chunk belongs to.
        data: Encoded audio bytes, forwarded to the sink untouched.

    Returns:
        Header, stream id and audio bytes as one frame.
    """
    encoded_id = stream_id.encode("utf-8")
    header = struct.pack(
        AUDIO_CHUNK_HEADER_FORMAT, BinaryMessageType.AUDIO_CHUNK.value, len(encoded_id)
    )
    return header + encoded_id + data


def unpack_audio_chunk(frame: bytes) -> AudioChunk:
    """
    Unpack a binary audio-chunk frame.

    Raises:
        ValueError: If the frame is truncated, not an audio chunk, carries an
            invalid stream id or no audio at all.
    """
    if len(frame) < AUDIO_CHUNK_HEADER_SIZE:
        raise ValueError(f"Expected at least {AUDIO_CHUNK_HEADER_SIZE} bytes, got {len(frame)}")

    message_type, id_length = struct.unpack(
        AUDIO_CHUNK_HEADER_FORMAT, frame[:AUDIO_CHUNK_HEADER_SIZE]
    )
    if message_type != BinaryMessageType.AUDIO_CHUNK.value:
        raise ValueError(f"Unsupported binary message type {message_type}")

    id_end = AUDIO_CHUNK_HEADER_SIZE + id_length
    if len(frame) < id_end:
        raise ValueError("Binary frame is shorter than its stream id length")
    stream_id = frame[AUDIO_CHUNK_HEADER_SIZE:id_end].decode("utf-8")
    validate_stream_id(stream_id)

    data = frame[id_end:]
    if not data:
        raise ValueError("Audio chunk frame carries no audio")
    return AudioChunk(stream_id=stream_id, data=data)
