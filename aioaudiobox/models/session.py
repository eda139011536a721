"""
Snapshot models for the AudioBox query surface.

These are immutable views of the session table and of the history store. They
are served as JSON by the HTTP API and never expose the live Session objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Alias

from .types import EndReason, SinkState


@dataclass(frozen=True)
class ActiveStream(DataClassORJSONMixin):
    """Entry of the active streams listing."""

    stream_id: Annotated[str, Alias("streamId")]
    title: str
    description: str
    start_time: Annotated[datetime, Alias("startTime")]
    listener_count: Annotated[int, Alias("listenerCount")]

    class Config(BaseConfig):
        """Config for serializing json responses."""

        serialize_by_alias = True


@dataclass(frozen=True)
class StreamStatus(DataClassORJSONMixin):
    """Live status of a single session."""

    stream_id: Annotated[str, Alias("streamId")]
    title: str
    description: str
    start_time: Annotated[datetime, Alias("startTime")]
    listener_count: Annotated[int, Alias("listenerCount")]
    peak_listener_count: Annotated[int, Alias("peakListenerCount")]
    owner_connection_id: Annotated[str, Alias("ownerConnectionId")]
    owner_user_id: Annotated[str, Alias("ownerUserId")]
    pending_teardown: Annotated[bool, Alias("pendingTeardown")]
    """True while the owner is disconnected and the grace timer is running."""
    sink_state: Annotated[SinkState, Alias("sinkState")]

    class Config(BaseConfig):
        """Config for serializing json responses."""

        serialize_by_alias = True


@dataclass(frozen=True)
class HistoryRecord(DataClassORJSONMixin):
    """Summary of a finished session, persisted by the history recorder."""

    stream_id: Annotated[str, Alias("streamId")]
    title: str
    description: str
    start_time: Annotated[datetime, Alias("startTime")]
    end_time: Annotated[datetime, Alias("endTime")]
    duration: int
    """Whole seconds between start_time and end_time."""
    peak_listener_count: Annotated[int, Alias("peakListenerCount")]
    owner_user_id: Annotated[str, Alias("ownerUserId")]
    reason: EndReason

    class Config(BaseConfig):
        """Config for serializing json responses."""

        serialize_by_alias = True
