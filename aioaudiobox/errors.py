"""Exceptions raised by the AudioBox coordinator."""

from __future__ import annotations

from aioaudiobox.models.types import StartFailureReason


class AudioBoxError(Exception):
    """Base class for all AudioBox errors."""


class StreamStartError(AudioBoxError):
    """A broadcast could not be started; the session table was left untouched."""

    reason: StartFailureReason = StartFailureReason.SINK_UNAVAILABLE

    def __init__(self, stream_id: str, message: str | None = None) -> None:
        self.stream_id = stream_id
        super().__init__(message or f"Cannot start stream {stream_id}: {self.reason.value}")


class SinkUnavailableError(StreamStartError):
    """The transcoding sink could not be created."""

    reason = StartFailureReason.SINK_UNAVAILABLE


class StreamConflictError(StreamStartError):
    """Another user is already live under the requested stream id."""

    reason = StartFailureReason.STREAM_ID_IN_USE
