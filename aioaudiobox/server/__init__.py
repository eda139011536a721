"""Public interface for the AudioBox server package."""

from .connection import AudioBoxConnection
from .coordinator import StreamCoordinator
from .events import (
    CoordinatorEvent,
    ListenerJoinedEvent,
    ListenerLeftEvent,
    SessionEndedEvent,
    SessionResumedEvent,
    SessionStartedEvent,
)
from .history import HistoryRecorder, HistoryStore, MemoryHistoryStore, SqliteHistoryStore
from .server import AudioBoxServer
from .sink import FfmpegHlsSink, SinkFactory, TranscoderSink, ffmpeg_sink_factory

__all__ = [
    "AudioBoxConnection",
    "AudioBoxServer",
    "CoordinatorEvent",
    "FfmpegHlsSink",
    "HistoryRecorder",
    "HistoryStore",
    "ListenerJoinedEvent",
    "ListenerLeftEvent",
    "MemoryHistoryStore",
    "SessionEndedEvent",
    "SessionResumedEvent",
    "SessionStartedEvent",
    "SinkFactory",
    "SqliteHistoryStore",
    "StreamCoordinator",
    "TranscoderSink",
    "ffmpeg_sink_factory",
]
