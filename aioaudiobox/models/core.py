"""
Core messages for the AudioBox protocol.

This module contains every JSON message exchanged over the signaling socket:
broadcaster session control, listener membership, opaque WebRTC signaling
relay, and the notifications the coordinator fans out to rooms.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Alias

from .types import (
    ClientMessage,
    EndReason,
    ServerMessage,
    SignalKind,
    StartFailureReason,
    StartResult,
)

logger = logging.getLogger(__name__)

ANONYMOUS_USER_ID = "anonymous"
DEFAULT_TITLE = "Untitled Stream"
MAX_STREAM_ID_LENGTH = 128
_STREAM_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def validate_stream_id(stream_id: str) -> None:
    """Raise a ValueError if stream_id is not a usable stream name."""
    if not stream_id:
        raise ValueError("streamId must not be empty")
    if len(stream_id) > MAX_STREAM_ID_LENGTH:
        raise ValueError(f"streamId must be at most {MAX_STREAM_ID_LENGTH} characters")
    if not _STREAM_ID_RE.match(stream_id) or stream_id in (".", ".."):
        raise ValueError(f"streamId contains invalid characters: {stream_id!r}")


@dataclass
class StreamRefPayload(DataClassORJSONMixin):
    """
    Payload that only names a stream.

    The id is not validated here: a malformed id names no live session, and the
    caller is answered the same way as for any unknown stream.
    """

    stream_id: Annotated[str, Alias("streamId")]
    """Logical stream name."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


# Broadcaster -> Server: start-stream
@dataclass
class StartStreamPayload(DataClassORJSONMixin):
    """Request to create or resume a broadcast session."""

    stream_id: Annotated[str, Alias("streamId")]
    """Logical stream name, unique among live sessions."""
    title: str = DEFAULT_TITLE
    """Display title."""
    description: str = ""
    """Display description."""
    owner_user_id: Annotated[str | None, Alias("ownerUserId")] = None
    """Stable identity of the broadcasting user, anonymous when absent."""

    @classmethod
    def __pre_deserialize__(cls, d: dict[str, Any]) -> dict[str, Any]:
        """Accept the legacy userId key used by older studio clients."""
        if "userId" in d and "ownerUserId" not in d:
            logger.info("start-stream used deprecated field userId, please send ownerUserId")
            d["ownerUserId"] = d.pop("userId")
        return d

    def __post_init__(self) -> None:
        """Validate field values."""
        validate_stream_id(self.stream_id)
        if not self.title:
            self.title = DEFAULT_TITLE
        if not self.owner_user_id:
            self.owner_user_id = ANONYMOUS_USER_ID

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class StartStreamMessage(ClientMessage):
    """Message sent by a broadcaster to go live or to resume after a reconnect."""

    payload: StartStreamPayload
    type: Literal["start-stream"] = "start-stream"


# Broadcaster -> Server: update-metadata
@dataclass
class UpdateMetadataPayload(DataClassORJSONMixin):
    """Partial metadata update; absent fields keep their current value."""

    stream_id: Annotated[str, Alias("streamId")]
    title: str | None = None
    description: str | None = None

    def __post_init__(self) -> None:
        """Validate field values."""
        validate_stream_id(self.stream_id)

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class UpdateMetadataMessage(ClientMessage):
    """Message sent by the owner to change title or description while live."""

    payload: UpdateMetadataPayload
    type: Literal["update-metadata"] = "update-metadata"


@dataclass
class EndStreamMessage(ClientMessage):
    """Message sent by the owner to end its session."""

    payload: StreamRefPayload
    type: Literal["end-stream"] = "end-stream"


# Listener -> Server
@dataclass
class JoinStreamMessage(ClientMessage):
    """Message sent by a listener to join a session's room."""

    payload: StreamRefPayload
    type: Literal["join-stream"] = "join-stream"


@dataclass
class LeaveStreamMessage(ClientMessage):
    """Message sent by a listener to leave a session's room."""

    payload: StreamRefPayload
    type: Literal["leave-stream"] = "leave-stream"


@dataclass
class ListenerConnectedMessage(ClientMessage):
    """Message sent by a listener once its peer connection carries audio."""

    payload: StreamRefPayload
    type: Literal["listener-connected"] = "listener-connected"


# Any -> Server: offer/answer/candidate
@dataclass
class SignalPayload(DataClassORJSONMixin):
    """Opaque signaling payload addressed to another connection."""

    target_connection_id: Annotated[str | None, Alias("targetConnectionId")] = None
    """Recipient connection; listeners may omit it to reach their broadcaster."""
    payload: Any = None
    """SDP or ICE candidate, relayed without interpretation."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class ClientOfferMessage(ClientMessage):
    """SDP offer sent by a broadcaster to one listener."""

    payload: SignalPayload
    type: Literal["offer"] = "offer"


@dataclass
class ClientAnswerMessage(ClientMessage):
    """SDP answer sent by a listener to its broadcaster."""

    payload: SignalPayload
    type: Literal["answer"] = "answer"


@dataclass
class ClientCandidateMessage(ClientMessage):
    """ICE candidate sent by either peer."""

    payload: SignalPayload
    type: Literal["candidate"] = "candidate"


# Server -> Client: welcome
@dataclass
class WelcomePayload(DataClassORJSONMixin):
    """Identity assigned to a freshly accepted connection."""

    connection_id: Annotated[str, Alias("connectionId")]

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class WelcomeMessage(ServerMessage):
    """First message on every connection."""

    payload: WelcomePayload
    type: Literal["welcome"] = "welcome"


# Server -> Broadcaster
@dataclass
class StreamStartedPayload(DataClassORJSONMixin):
    """Acknowledgement of a start-stream request."""

    stream_id: Annotated[str, Alias("streamId")]
    result: StartResult
    start_time: Annotated[datetime, Alias("startTime")]

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class StreamStartedMessage(ServerMessage):
    """Sent to the broadcaster once its session is live."""

    payload: StreamStartedPayload
    type: Literal["stream-started"] = "stream-started"


@dataclass
class StreamStartFailedPayload(DataClassORJSONMixin):
    """Reason a broadcast could not start."""

    stream_id: Annotated[str, Alias("streamId")]
    reason: StartFailureReason

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class StreamStartFailedMessage(ServerMessage):
    """Sent to the broadcaster when start-stream was rejected or rolled back."""

    payload: StreamStartFailedPayload
    type: Literal["stream-start-failed"] = "stream-start-failed"


@dataclass
class ListenerRefPayload(DataClassORJSONMixin):
    """Payload naming one listener connection."""

    listener_connection_id: Annotated[str, Alias("listenerConnectionId")]

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class WatcherMessage(ServerMessage):
    """New listener announcement sent to the owner."""

    payload: ListenerRefPayload
    type: Literal["watcher"] = "watcher"


@dataclass
class ListenerLeftMessage(ServerMessage):
    """Listener departure sent to the owner."""

    payload: ListenerRefPayload
    type: Literal["listener-left"] = "listener-left"


# Server -> Listener / Room
@dataclass
class StreamMetadataPayload(DataClassORJSONMixin):
    """Metadata snapshot sent to a listener on join."""

    title: str
    description: str
    start_time: Annotated[datetime, Alias("startTime")]

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class StreamMetadataMessage(ServerMessage):
    """Sent to a listener right after it joined a live session."""

    payload: StreamMetadataPayload
    type: Literal["stream-metadata"] = "stream-metadata"


@dataclass
class MetadataUpdatedPayload(DataClassORJSONMixin):
    """New metadata broadcast to the room."""

    title: str
    description: str


@dataclass
class MetadataUpdatedMessage(ServerMessage):
    """Sent to the whole room when the owner changed the metadata."""

    payload: MetadataUpdatedPayload
    type: Literal["metadata-updated"] = "metadata-updated"


@dataclass
class StreamNotFoundMessage(ServerMessage):
    """Sent to a listener that tried to join an unknown stream."""

    payload: StreamRefPayload
    type: Literal["stream-not-found"] = "stream-not-found"


@dataclass
class StreamEndedPayload(DataClassORJSONMixin):
    """Teardown notification details."""

    stream_id: Annotated[str, Alias("streamId")]
    reason: EndReason

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class StreamEndedMessage(ServerMessage):
    """Sent to the whole room exactly once when a session is torn down."""

    payload: StreamEndedPayload
    type: Literal["stream-ended"] = "stream-ended"


# Server -> Peer: relayed offer/answer/candidate
@dataclass
class SignalRelayPayload(DataClassORJSONMixin):
    """Opaque signaling payload tagged with the peer it came from."""

    sender_connection_id: Annotated[str, Alias("senderConnectionId")]
    payload: Any = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class ServerOfferMessage(ServerMessage):
    """Relayed SDP offer."""

    payload: SignalRelayPayload
    type: Literal["offer"] = "offer"


@dataclass
class ServerAnswerMessage(ServerMessage):
    """Relayed SDP answer."""

    payload: SignalRelayPayload
    type: Literal["answer"] = "answer"


@dataclass
class ServerCandidateMessage(ServerMessage):
    """Relayed ICE candidate."""

    payload: SignalRelayPayload
    type: Literal["candidate"] = "candidate"


def build_signal_relay(
    kind: SignalKind, sender_connection_id: str, payload: Any
) -> ServerOfferMessage | ServerAnswerMessage | ServerCandidateMessage:
    """Build the outgoing relay message for a signaling kind."""
    relay = SignalRelayPayload(sender_connection_id=sender_connection_id, payload=payload)
    if kind is SignalKind.OFFER:
        return ServerOfferMessage(payload=relay)
    if kind is SignalKind.ANSWER:
        return ServerAnswerMessage(payload=relay)
    return ServerCandidateMessage(payload=relay)
