"""Events emitted by the coordinator to registered listeners."""

from __future__ import annotations

from dataclasses import dataclass

from aioaudiobox.models.session import HistoryRecord


class CoordinatorEvent:
    """Base event type used by StreamCoordinator.add_event_listener()."""


@dataclass
class SessionStartedEvent(CoordinatorEvent):
    """A new session went live."""

    stream_id: str
    owner_connection_id: str


@dataclass
class SessionResumedEvent(CoordinatorEvent):
    """A reconnecting broadcaster took over an existing session."""

    stream_id: str
    owner_connection_id: str


@dataclass
class SessionEndedEvent(CoordinatorEvent):
    """A session was torn down."""

    record: HistoryRecord
    """The summary handed to the history recorder."""


@dataclass
class ListenerJoinedEvent(CoordinatorEvent):
    """A listener was admitted into a session."""

    stream_id: str
    listener_connection_id: str


@dataclass
class ListenerLeftEvent(CoordinatorEvent):
    """A listener left a session, explicitly or by disconnecting."""

    stream_id: str
    listener_connection_id: str
