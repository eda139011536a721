"""Wires the coordinator components together and dispatches client messages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime

from aioaudiobox.errors import StreamStartError
from aioaudiobox.models.core import (
    ClientAnswerMessage,
    ClientCandidateMessage,
    ClientOfferMessage,
    EndStreamMessage,
    JoinStreamMessage,
    LeaveStreamMessage,
    ListenerConnectedMessage,
    MetadataUpdatedMessage,
    MetadataUpdatedPayload,
    StartStreamMessage,
    StartStreamPayload,
    StreamEndedMessage,
    StreamEndedPayload,
    StreamStartedMessage,
    StreamStartedPayload,
    StreamStartFailedMessage,
    StreamStartFailedPayload,
    UpdateMetadataMessage,
    UpdateMetadataPayload,
)
from aioaudiobox.models.session import ActiveStream, HistoryRecord, StreamStatus
from aioaudiobox.models.types import (
    ClientMessage,
    EndReason,
    ServerMessage,
    SignalKind,
    SinkState,
    StartResult,
)
from aioaudiobox.util import utc_now

from .broker import SignalingBroker
from .events import (
    CoordinatorEvent,
    ListenerJoinedEvent,
    ListenerLeftEvent,
    SessionEndedEvent,
    SessionResumedEvent,
    SessionStartedEvent,
)
from .grace import DEFAULT_GRACE_PERIOD_S, DisconnectGraceManager
from .history import DEFAULT_QUEUE_SIZE, HistoryRecorder, HistoryStore, MemoryHistoryStore
from .registry import ConnectionRegistry
from .relay import DEFAULT_MAX_BUFFERED_CHUNKS, MediaRelayAdapter
from .session import StreamSessionTable
from .sink import SinkFactory

logger = logging.getLogger(__name__)

DEFAULT_SINK_RETRY_INTERVAL_S = 5.0

MessageSender = Callable[[ServerMessage], None]
"""Enqueues a message on one connection without blocking."""


class StreamCoordinator:
    """
    Transport independent core of the AudioBox server.

    Connections register a sender, hand every decoded client message to
    dispatch() and every audio frame to forward_audio(), and report their close
    through connection_closed(). Everything the coordinator sends back goes
    through the registered senders.
    """

    _connections: dict[str, MessageSender]
    """Connection id -> sender of every open connection."""
    _event_cbs: list[Callable[[StreamCoordinator, CoordinatorEvent], None]]
    _sink_retry_at: dict[str, float]
    """Stream id -> loop time before which a dead sink is not rebuilt again."""
    _background_tasks: set[asyncio.Task[None]]

    def __init__(
        self,
        sink_factory: SinkFactory,
        history_store: HistoryStore | None = None,
        *,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
        max_buffered_chunks: int = DEFAULT_MAX_BUFFERED_CHUNKS,
        history_queue_size: int = DEFAULT_QUEUE_SIZE,
        sink_retry_interval_s: float = DEFAULT_SINK_RETRY_INTERVAL_S,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            sink_factory: Creates the transcoding sink of a stream.
            history_store: Where finished sessions go, in memory if None.
            grace_period_s: Seconds a disconnected owner has to resume.
            max_buffered_chunks: Audio chunks kept per stream while no sink is usable.
            history_queue_size: History records queued before new ones are dropped.
            sink_retry_interval_s: Minimum delay between two rebuilds of a dead sink.
            clock: Source of session timestamps.
        """
        self._registry = ConnectionRegistry()
        self._relay = MediaRelayAdapter(sink_factory, max_buffered_chunks=max_buffered_chunks)
        self._table = StreamSessionTable(
            self._registry,
            self._relay,
            on_session_ended=self._handle_session_ended,
            clock=clock,
        )
        self._grace = DisconnectGraceManager(self._table, grace_period_s=grace_period_s)
        self._broker = SignalingBroker(self._table, self._registry, self.send)
        self._recorder = HistoryRecorder(
            history_store if history_store is not None else MemoryHistoryStore(),
            max_pending=history_queue_size,
        )
        self._sink_retry_interval_s = sink_retry_interval_s
        self._connections = {}
        self._event_cbs = []
        self._sink_retry_at = {}
        self._background_tasks = set()
        self._closed = False

    @property
    def table(self) -> StreamSessionTable:
        """The session table."""
        return self._table

    @property
    def registry(self) -> ConnectionRegistry:
        """Room membership of all connections."""
        return self._registry

    @property
    def relay(self) -> MediaRelayAdapter:
        """The media relay owning the transcoding sinks."""
        return self._relay

    @property
    def broker(self) -> SignalingBroker:
        """The signaling broker."""
        return self._broker

    @property
    def recorder(self) -> HistoryRecorder:
        """The history recorder."""
        return self._recorder

    @property
    def closed(self) -> bool:
        """Whether close() was called."""
        return self._closed

    # Connections

    def register_connection(self, connection_id: str, sender: MessageSender) -> None:
        """Make a connection reachable for messages from the coordinator."""
        if connection_id in self._connections:
            raise ValueError(f"Connection {connection_id} is already registered")
        self._connections[connection_id] = sender
        logger.debug("Connection %s registered", connection_id)

    def is_connected(self, connection_id: str) -> bool:
        """Check whether a connection is registered."""
        return connection_id in self._connections

    def send(self, connection_id: str, message: ServerMessage) -> bool:
        """
        Send a message to one connection.

        Returns:
            False if the connection is not (or no longer) registered.
        """
        sender = self._connections.get(connection_id)
        if sender is None:
            return False
        sender(message)
        return True

    def _send_to_room(self, stream_id: str, message: ServerMessage) -> None:
        for connection_id in self._registry.members_of(stream_id):
            self.send(connection_id, message)

    async def connection_closed(self, connection_id: str) -> None:
        """
        Clean up after a closed connection.

        Owned sessions enter their grace period, listener memberships are
        released. Safe to call more than once and for connections that never
        joined anything.
        """
        if self._connections.pop(connection_id, None) is None:
            return
        logger.debug("Connection %s closed", connection_id)
        for stream_id in self._table.streams_owned_by(connection_id):
            await self._grace.owner_disconnected(stream_id, connection_id)
        for stream_id in self._registry.rooms_of(connection_id):
            if await self._broker.leave(stream_id, connection_id):
                self._signal_event(ListenerLeftEvent(stream_id, connection_id))
        self._registry.drop_connection(connection_id)
        self._broker.forget_connection(connection_id)

    # Dispatch

    async def dispatch(self, connection_id: str, message: ClientMessage) -> None:
        """Handle one decoded message received on a connection."""
        if self._closed:
            logger.debug("Coordinator closed, ignoring %s", type(message).__name__)
            return
        match message:
            case StartStreamMessage(payload):
                await self.start_stream(connection_id, payload)
            case UpdateMetadataMessage(payload):
                await self.update_metadata(connection_id, payload)
            case EndStreamMessage(payload):
                await self.end_stream(connection_id, payload.stream_id)
            case JoinStreamMessage(payload):
                await self.join_stream(connection_id, payload.stream_id)
            case LeaveStreamMessage(payload):
                await self.leave_stream(connection_id, payload.stream_id)
            case ListenerConnectedMessage(payload):
                self._broker.mark_connected(payload.stream_id, connection_id)
            case ClientOfferMessage(payload):
                self._broker.route(
                    SignalKind.OFFER, connection_id, payload.target_connection_id, payload.payload
                )
            case ClientAnswerMessage(payload):
                self._broker.route(
                    SignalKind.ANSWER, connection_id, payload.target_connection_id, payload.payload
                )
            case ClientCandidateMessage(payload):
                self._broker.route(
                    SignalKind.CANDIDATE,
                    connection_id,
                    payload.target_connection_id,
                    payload.payload,
                )
            case _:
                logger.warning(
                    "Unhandled message %s from %s", type(message).__name__, connection_id
                )

    async def start_stream(
        self, connection_id: str, payload: StartStreamPayload
    ) -> StartResult | None:
        """
        Create or resume the session requested by a broadcaster.

        The broadcaster gets stream-started, or stream-start-failed if the
        session could not be created.
        """
        stream_id = payload.stream_id
        previous_owner = self._table.owner_of(stream_id)
        try:
            result = await self._table.create_or_resume(
                stream_id,
                payload.title,
                payload.description,
                connection_id,
                payload.owner_user_id,
            )
        except StreamStartError as err:
            logger.warning("Start of %s by %s failed: %s", stream_id, connection_id, err)
            self.send(
                connection_id,
                StreamStartFailedMessage(
                    payload=StreamStartFailedPayload(stream_id=stream_id, reason=err.reason)
                ),
            )
            return None

        status = self._table.get(stream_id)
        if status is None or status.owner_connection_id != connection_id:
            # Ended or taken over again before we got here.
            return result
        self._sink_retry_at.pop(stream_id, None)
        self.send(
            connection_id,
            StreamStartedMessage(
                payload=StreamStartedPayload(
                    stream_id=stream_id, result=result, start_time=status.start_time
                )
            ),
        )
        if result is StartResult.RESUMED:
            if previous_owner != connection_id:
                # The new owner connection has no peer connections yet.
                for listener_id in self._listeners_of(stream_id, connection_id):
                    self._broker.announce_watcher(connection_id, listener_id)
            self._signal_event(SessionResumedEvent(stream_id, connection_id))
        else:
            self._signal_event(SessionStartedEvent(stream_id, connection_id))
        return result

    async def update_metadata(self, connection_id: str, payload: UpdateMetadataPayload) -> bool:
        """Apply an owner's metadata change and announce it to the room."""
        status = await self._table.update_metadata(
            payload.stream_id, connection_id, payload.title, payload.description
        )
        if status is None:
            return False
        self._send_to_room(
            payload.stream_id,
            MetadataUpdatedMessage(
                payload=MetadataUpdatedPayload(title=status.title, description=status.description)
            ),
        )
        return True

    async def end_stream(self, connection_id: str, stream_id: str) -> HistoryRecord | None:
        """End a session on request of its current owner."""
        return await self._table.end_session(
            stream_id, EndReason.OWNER_ENDED, caller_connection_id=connection_id
        )

    async def join_stream(self, connection_id: str, stream_id: str) -> bool:
        """Admit a listener; unknown streams are answered with stream-not-found."""
        admission = await self._broker.join(stream_id, connection_id)
        if admission is None:
            return False
        if admission.newly_joined:
            self._signal_event(ListenerJoinedEvent(stream_id, connection_id))
        return True

    async def leave_stream(self, connection_id: str, stream_id: str) -> bool:
        """Remove a listener from a session."""
        left = await self._broker.leave(stream_id, connection_id)
        if left:
            self._signal_event(ListenerLeftEvent(stream_id, connection_id))
        return left

    def _listeners_of(self, stream_id: str, owner_connection_id: str) -> list[str]:
        return sorted(self._registry.members_of(stream_id) - {owner_connection_id})

    # Media

    def forward_audio(self, connection_id: str, stream_id: str, chunk: bytes) -> bool:
        """
        Forward an audio chunk from a broadcaster to its stream's sink.

        Chunks for unknown streams or from connections that do not own the
        stream are dropped. A dead sink is rebuilt in the background while the
        chunks are buffered.

        Returns:
            True if the chunk was accepted.
        """
        if self._closed:
            return False
        owner_connection_id = self._table.owner_of(stream_id)
        if owner_connection_id is None:
            logger.debug("Dropping audio for unknown stream %s", stream_id)
            return False
        if owner_connection_id != connection_id:
            logger.warning("Dropping audio for %s from non-owner %s", stream_id, connection_id)
            return False
        if self._relay.sink_state(stream_id) is not SinkState.ALIVE:
            self._schedule_sink_restore(stream_id, connection_id)
        self._relay.forward(stream_id, chunk)
        return True

    def _schedule_sink_restore(self, stream_id: str, connection_id: str) -> None:
        loop = asyncio.get_running_loop()
        if loop.time() < self._sink_retry_at.get(stream_id, 0.0):
            return
        self._sink_retry_at[stream_id] = loop.time() + self._sink_retry_interval_s
        logger.info("Sink for %s is not running, rebuilding it", stream_id)
        task = loop.create_task(self._restore_sink(stream_id, connection_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _restore_sink(self, stream_id: str, connection_id: str) -> None:
        try:
            restored = await self._table.restore_sink(stream_id, connection_id)
        except Exception:
            logger.exception("Error rebuilding sink for %s", stream_id)
            return
        if restored:
            logger.info("Sink for %s rebuilt", stream_id)

    # Teardown fan-out

    def _handle_session_ended(self, record: HistoryRecord, members: frozenset[str]) -> None:
        """Notify the former room, persist the record and signal observers."""
        message = StreamEndedMessage(
            payload=StreamEndedPayload(stream_id=record.stream_id, reason=record.reason)
        )
        for connection_id in members:
            self.send(connection_id, message)
        self._broker.session_ended(record.stream_id, members)
        self._sink_retry_at.pop(record.stream_id, None)
        self._recorder.record(record)
        self._signal_event(SessionEndedEvent(record))

    # Queries

    def list_active_streams(self) -> list[ActiveStream]:
        """Return every live session, oldest first."""
        return self._table.list_active()

    def get_stream_status(self, stream_id: str) -> StreamStatus | None:
        """Return the live status of one session, or None if it is not live."""
        return self._table.get(stream_id)

    async def get_history(
        self, limit: int, owner_user_id: str | None = None
    ) -> list[HistoryRecord]:
        """Return the newest history records, optionally for one user."""
        return await self._recorder.query(limit, owner_user_id)

    # Events

    def add_event_listener(
        self, callback: Callable[[StreamCoordinator, CoordinatorEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for session lifecycle changes.

        State changes include:
        - A session started, was resumed or ended
        - A listener joined or left a session

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: CoordinatorEvent) -> None:
        """Signal an event to all registered listeners."""
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")

    # Lifecycle

    def start(self) -> None:
        """Start background workers on the running loop."""
        self._recorder.start()

    async def close(self) -> None:
        """
        Shut the coordinator down.

        Every live session ends with server-shutdown, sinks are released and
        the history queue is drained.
        """
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down, ending %d live session(s)", len(self._table))
        await self._table.close()
        await self._grace.close()
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        await self._relay.close()
        await self._recorder.close()
