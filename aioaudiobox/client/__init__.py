"""Public interface for the AudioBox client package."""

from .client import AudioBoxClient, DisconnectCallback, MessageCallback

__all__ = [
    "AudioBoxClient",
    "DisconnectCallback",
    "MessageCallback",
]
