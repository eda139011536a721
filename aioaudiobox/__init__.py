"""Live audio broadcast coordinator: WebRTC signaling, HLS transcoding and stream history."""

from .config import ServerConfig
from .errors import AudioBoxError, SinkUnavailableError, StreamConflictError, StreamStartError

__all__ = [
    "AudioBoxError",
    "ServerConfig",
    "SinkUnavailableError",
    "StreamConflictError",
    "StreamStartError",
]
