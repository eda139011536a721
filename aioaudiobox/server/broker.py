"""Mediates the WebRTC handshake between a broadcaster and its listeners."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from aioaudiobox.models.core import (
    ListenerLeftMessage,
    ListenerRefPayload,
    StreamMetadataMessage,
    StreamMetadataPayload,
    StreamNotFoundMessage,
    StreamRefPayload,
    WatcherMessage,
    build_signal_relay,
    validate_stream_id,
)
from aioaudiobox.models.types import ListenerState, ServerMessage, SignalKind

from .registry import ConnectionRegistry
from .session import ListenerAdmission, StreamSessionTable

logger = logging.getLogger(__name__)

SendFunc = Callable[[str, ServerMessage], bool]
"""Deliver a message to a connection id; returns False if it is not connected."""


def _is_empty(payload: Any) -> bool:
    return payload is None or (isinstance(payload, str | dict | list) and not payload)


class SignalingBroker:
    """
    Admits listeners into sessions and relays offer/answer/candidate messages.

    Payloads are never interpreted; they are tagged with the sender's
    connection id and delivered only between a session owner and a listener
    of that same session.
    """

    _listener_states: dict[str, dict[str, ListenerState]]
    """Listener connection id -> stream id -> negotiation state."""

    def __init__(
        self,
        table: StreamSessionTable,
        registry: ConnectionRegistry,
        send: SendFunc,
    ) -> None:
        """
        Initialize the broker.

        Args:
            table: Session table used to admit and release listeners.
            registry: Room membership, used to validate routing.
            send: Delivers a message to one connection.
        """
        self._table = table
        self._registry = registry
        self._send = send
        self._listener_states = {}

    # Membership

    async def join(self, stream_id: str, connection_id: str) -> ListenerAdmission | None:
        """
        Admit a listener into a live session.

        On success the listener gets the metadata snapshot and the owner a
        watcher announcement. An unknown stream yields stream-not-found to the
        caller only.
        """
        try:
            validate_stream_id(stream_id)
        except ValueError as err:
            logger.warning("Connection %s asked for malformed stream id: %s", connection_id, err)
            self._send(connection_id, StreamNotFoundMessage(payload=StreamRefPayload(stream_id)))
            return None
        if self._table.owner_of(stream_id) == connection_id:
            logger.warning("Owner %s tried to listen to its own stream %s", connection_id, stream_id)
            return None

        if not self._registry.is_member(connection_id, stream_id):
            self._set_state(connection_id, stream_id, ListenerState.JOINING)
        admission = await self._table.admit_listener(stream_id, connection_id)
        if admission is None:
            self._clear_state(connection_id, stream_id)
            logger.debug("Connection %s asked for unknown stream %s", connection_id, stream_id)
            self._send(connection_id, StreamNotFoundMessage(payload=StreamRefPayload(stream_id)))
            return None

        self._send(
            connection_id,
            StreamMetadataMessage(
                payload=StreamMetadataPayload(
                    title=admission.title,
                    description=admission.description,
                    start_time=admission.start_time,
                )
            ),
        )
        if admission.newly_joined:
            self.announce_watcher(admission.owner_connection_id, connection_id)
            self._set_state(connection_id, stream_id, ListenerState.AWAITING_OFFER)
            logger.info("Listener %s joined %s", connection_id, stream_id)
        return admission

    async def leave(self, stream_id: str, connection_id: str) -> bool:
        """
        Remove a listener from a session and tell the owner.

        Returns:
            True if the connection was a listener of the live session.
        """
        owner_connection_id = await self._table.release_listener(stream_id, connection_id)
        if owner_connection_id is None:
            self._clear_state(connection_id, stream_id)
            return False
        self._set_state(connection_id, stream_id, ListenerState.LEFT)
        self._clear_state(connection_id, stream_id)
        self._send(
            owner_connection_id,
            ListenerLeftMessage(payload=ListenerRefPayload(listener_connection_id=connection_id)),
        )
        logger.info("Listener %s left %s", connection_id, stream_id)
        return True

    def announce_watcher(self, owner_connection_id: str, listener_connection_id: str) -> None:
        """Tell an owner about a listener it must send an offer to."""
        self._send(
            owner_connection_id,
            WatcherMessage(
                payload=ListenerRefPayload(listener_connection_id=listener_connection_id)
            ),
        )

    def mark_connected(self, stream_id: str, connection_id: str) -> None:
        """Record the listener's report that its peer connection is up."""
        states = self._listener_states.get(connection_id)
        if states is None or stream_id not in states:
            logger.debug("Ignoring connected report from %s for %s", connection_id, stream_id)
            return
        states[stream_id] = ListenerState.CONNECTED

    def session_ended(self, stream_id: str, members: frozenset[str]) -> None:
        """Finish the negotiation state of every listener of an ended session."""
        for connection_id in members:
            if self.listener_state(connection_id, stream_id) is not None:
                self._set_state(connection_id, stream_id, ListenerState.SESSION_ENDED)
                self._clear_state(connection_id, stream_id)

    def forget_connection(self, connection_id: str) -> None:
        """Drop all negotiation state of a closed connection."""
        self._listener_states.pop(connection_id, None)

    def listener_state(self, connection_id: str, stream_id: str) -> ListenerState | None:
        """Return the negotiation state of a listener in a session."""
        return self._listener_states.get(connection_id, {}).get(stream_id)

    def _set_state(self, connection_id: str, stream_id: str, state: ListenerState) -> None:
        self._listener_states.setdefault(connection_id, {})[stream_id] = state

    def _clear_state(self, connection_id: str, stream_id: str) -> None:
        states = self._listener_states.get(connection_id)
        if states is None:
            return
        states.pop(stream_id, None)
        if not states:
            del self._listener_states[connection_id]

    # Routing

    def route(
        self,
        kind: SignalKind,
        sender_connection_id: str,
        target_connection_id: str | None,
        payload: Any,
    ) -> bool:
        """
        Relay a signaling message to its target.

        A listener may omit the target; it then goes to the owner of the one
        session the listener is in. Malformed messages are dropped and logged.

        Returns:
            True if the message was handed to the target connection.
        """
        if _is_empty(payload):
            logger.warning("Dropping %s from %s: empty payload", kind.value, sender_connection_id)
            return False
        if target_connection_id is None:
            target_connection_id = self._default_target(sender_connection_id)
            if target_connection_id is None:
                logger.warning(
                    "Dropping %s from %s: no target and no single session to route to",
                    kind.value,
                    sender_connection_id,
                )
                return False
        if not target_connection_id or target_connection_id == sender_connection_id:
            logger.warning(
                "Dropping %s from %s: invalid target %r",
                kind.value,
                sender_connection_id,
                target_connection_id,
            )
            return False

        stream_id = self._shared_session(sender_connection_id, target_connection_id)
        if stream_id is None:
            logger.warning(
                "Dropping %s from %s to %s: not peers in any session",
                kind.value,
                sender_connection_id,
                target_connection_id,
            )
            return False

        if self._table.owner_of(stream_id) == target_connection_id:
            return self.route_to_broadcaster(
                target_connection_id, sender_connection_id, kind, payload
            )
        delivered = self.route_to_listener(
            target_connection_id, sender_connection_id, kind, payload
        )
        if delivered and kind is SignalKind.OFFER:
            self._set_state(target_connection_id, stream_id, ListenerState.NEGOTIATING)
        return delivered

    def route_to_broadcaster(
        self,
        session_owner_connection_id: str,
        sender_connection_id: str,
        kind: SignalKind,
        payload: Any,
    ) -> bool:
        """Deliver a listener's answer or candidate to the session owner."""
        return self._deliver(session_owner_connection_id, sender_connection_id, kind, payload)

    def route_to_listener(
        self,
        target_connection_id: str,
        sender_connection_id: str,
        kind: SignalKind,
        payload: Any,
    ) -> bool:
        """Deliver the owner's offer or candidate to one listener."""
        return self._deliver(target_connection_id, sender_connection_id, kind, payload)

    def _deliver(
        self, target_connection_id: str, sender_connection_id: str, kind: SignalKind, payload: Any
    ) -> bool:
        delivered = self._send(
            target_connection_id, build_signal_relay(kind, sender_connection_id, payload)
        )
        if not delivered:
            logger.debug(
                "Could not deliver %s from %s: %s is gone",
                kind.value,
                sender_connection_id,
                target_connection_id,
            )
        return delivered

    def _default_target(self, sender_connection_id: str) -> str | None:
        owners = {
            owner
            for stream_id in self._registry.rooms_of(sender_connection_id)
            if (owner := self._table.owner_of(stream_id)) is not None
            and owner != sender_connection_id
        }
        if len(owners) != 1:
            return None
        return owners.pop()

    def _shared_session(self, connection_a: str, connection_b: str) -> str | None:
        """Find a session where one connection owns it and the other listens."""
        for stream_id in self._registry.rooms_of(connection_a):
            if not self._registry.is_member(connection_b, stream_id):
                continue
            if self._table.owner_of(stream_id) in (connection_a, connection_b):
                return stream_id
        return None
