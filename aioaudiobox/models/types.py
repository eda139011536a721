"""Models for enum types used by AudioBox."""

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


# Base message classes
@dataclass
class ClientMessage(DataClassORJSONMixin):
    """Base class for messages sent by broadcasters and listeners."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


@dataclass
class ServerMessage(DataClassORJSONMixin):
    """Base class for messages sent by the coordinator."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


# Enums


class BinaryMessageType(Enum):
    """Enum for Binary Message Types."""

    AUDIO_CHUNK = 4
    """Encoded audio chunk from a broadcaster, addressed to one stream."""


class SignalKind(Enum):
    """Kinds of WebRTC signaling messages relayed by the broker."""

    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"


class StartResult(Enum):
    """Outcome of a start-stream request."""

    CREATED = "created"
    """A new session was created (or an unrecoverable one was replaced)."""
    RESUMED = "resumed"
    """An existing session was taken over by a reconnecting broadcaster."""


class EndReason(Enum):
    """Why a session was torn down."""

    OWNER_ENDED = "owner-ended"
    """The current owner sent end-stream."""
    OWNER_GRACE_EXPIRED = "owner-grace-expired"
    """The owner disconnected and did not come back within the grace period."""
    SINK_LOST = "sink-lost"
    """The transcoder died and the owner restarted the stream from scratch."""
    SERVER_SHUTDOWN = "server-shutdown"
    """The coordinator is shutting down."""


class SinkState(Enum):
    """State of the transcoding sink for a stream."""

    ABSENT = "absent"
    """No sink was created yet (or it was released)."""
    ALIVE = "alive"
    """The sink accepts bytes."""
    DEAD = "dead"
    """The sink process exited while the stream was still live."""


class ListenerState(Enum):
    """Negotiation state of one listener connection within one session."""

    JOINING = "joining"
    AWAITING_OFFER = "awaiting-offer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    LEFT = "left"
    SESSION_ENDED = "session-ended"


class StartFailureReason(Enum):
    """Reason sent with stream-start-failed."""

    SINK_UNAVAILABLE = "sink-unavailable"
    """The transcoder could not be started."""
    STREAM_ID_IN_USE = "stream-id-in-use"
    """Another user is live under the same stream id."""
