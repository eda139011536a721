"""The authoritative table of live broadcast sessions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from aioaudiobox.errors import SinkUnavailableError, StreamConflictError
from aioaudiobox.models.core import ANONYMOUS_USER_ID
from aioaudiobox.models.session import ActiveStream, HistoryRecord, StreamStatus
from aioaudiobox.models.types import EndReason, StartResult
from aioaudiobox.util import utc_now, whole_seconds_between

from .registry import ConnectionRegistry
from .relay import MediaRelayAdapter
from .sink import TranscoderSink

if TYPE_CHECKING:
    from .grace import GraceTimer

logger = logging.getLogger(__name__)

SessionEndedCallback = Callable[[HistoryRecord, frozenset[str]], None]
"""Called with the history record and the former room members after a teardown."""


@dataclass
class Session:
    """One active broadcast. Only mutated by StreamSessionTable under its stream lock."""

    stream_id: str
    owner_connection_id: str
    """Connection currently acting as broadcaster; changes across reconnects."""
    owner_user_id: str
    """Stable identity of the broadcasting user, for history attribution."""
    title: str
    description: str
    start_time: datetime
    """Set once at creation, kept across resumptions."""
    current_listener_count: int = 0
    peak_listener_count: int = 0
    sink: TranscoderSink | None = None
    """Transcoding sink feeding this stream, once initialized."""
    pending_disconnect_timer: GraceTimer | None = None
    """Only set while the grace period after an owner disconnect is running."""

    @property
    def pending_teardown(self) -> bool:
        """Whether the owner is gone and the session waits for resumption."""
        return self.pending_disconnect_timer is not None


@dataclass(frozen=True)
class ListenerAdmission:
    """Result of admitting a listener into a live session."""

    stream_id: str
    owner_connection_id: str
    title: str
    description: str
    start_time: datetime
    peak_listener_count: int
    newly_joined: bool
    """False if the connection was already a listener of this session."""


@dataclass
class _StreamLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class StreamSessionTable:
    """
    Single source of truth for Session entities.

    Every mutation runs under a lock dedicated to its stream id, so operations
    on one stream are serialized while different streams proceed concurrently.
    The raw session map is never handed out; readers get immutable snapshots.
    """

    _sessions: dict[str, Session]
    _locks: dict[str, _StreamLock]
    """Stream id -> lock, kept only while someone holds or waits for it."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        relay: MediaRelayAdapter,
        *,
        on_session_ended: SessionEndedCallback | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize the table.

        Args:
            registry: Room membership shared with the signaling broker.
            relay: Media relay owning the transcoding sinks.
            on_session_ended: Invoked exactly once per teardown, while the
                stream lock is still held.
            clock: Source of session timestamps.
        """
        self._registry = registry
        self._relay = relay
        self._on_session_ended = on_session_ended
        self._clock = clock
        self._sessions = {}
        self._locks = {}

    @asynccontextmanager
    async def _locked(self, stream_id: str) -> AsyncIterator[None]:
        """Serialize with every other mutation of the same stream."""
        entry = self._locks.get(stream_id)
        if entry is None:
            entry = self._locks[stream_id] = _StreamLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[stream_id]

    # Mutations

    async def create_or_resume(
        self,
        stream_id: str,
        title: str,
        description: str,
        owner_connection_id: str,
        owner_user_id: str | None = None,
    ) -> StartResult:
        """
        Create a session or let a reconnecting broadcaster take it over.

        A live session whose sink is still alive is resumed: the grace timer is
        cancelled, the owner connection is swapped, and start time, counters,
        metadata and sink stay untouched. A session whose sink is gone is
        unrecoverable; it is torn down and replaced by a fresh one.

        Raises:
            StreamConflictError: If another user is live under this stream id.
            SinkUnavailableError: If no sink could be created. Nothing is
                added to the table in that case.
        """
        owner_user_id = owner_user_id or ANONYMOUS_USER_ID
        async with self._locked(stream_id):
            session = self._sessions.get(stream_id)
            if session is not None:
                if self._relay.is_alive(stream_id):
                    if session.owner_user_id != owner_user_id:
                        logger.warning(
                            "Rejecting start of %s by user %s, owned by %s",
                            stream_id,
                            owner_user_id,
                            session.owner_user_id,
                        )
                        raise StreamConflictError(stream_id)
                    self._resume_locked(session, owner_connection_id)
                    return StartResult.RESUMED
                logger.info("Sink for %s is gone, restarting the session", stream_id)
                self._teardown_locked(session, EndReason.SINK_LOST)

            try:
                sink = await self._relay.ensure_sink(stream_id)
            except SinkUnavailableError:
                logger.error("Cannot start %s: transcoder unavailable", stream_id)
                self._relay.release_sink(stream_id)
                raise

            self._sessions[stream_id] = Session(
                stream_id=stream_id,
                owner_connection_id=owner_connection_id,
                owner_user_id=owner_user_id,
                title=title,
                description=description,
                start_time=self._clock(),
                sink=sink,
            )
            self._registry.join(owner_connection_id, stream_id)
            logger.info("Stream %s started by %s", stream_id, owner_connection_id)
            return StartResult.CREATED

    def _resume_locked(self, session: Session, owner_connection_id: str) -> None:
        if session.pending_disconnect_timer is not None:
            session.pending_disconnect_timer.cancel()
            session.pending_disconnect_timer = None
        previous = session.owner_connection_id
        if previous != owner_connection_id:
            self._registry.leave(previous, session.stream_id)
            session.owner_connection_id = owner_connection_id
        self._registry.join(owner_connection_id, session.stream_id)
        logger.info(
            "Stream %s resumed by %s (previous owner %s)",
            session.stream_id,
            owner_connection_id,
            previous,
        )

    async def update_metadata(
        self,
        stream_id: str,
        caller_connection_id: str,
        title: str | None = None,
        description: str | None = None,
    ) -> StreamStatus | None:
        """
        Change title and/or description. Only the current owner may do so.

        Returns:
            The updated status, or None if the stream is unknown or the caller
            is not its owner.
        """
        async with self._locked(stream_id):
            session = self._sessions.get(stream_id)
            if session is None:
                return None
            if session.owner_connection_id != caller_connection_id:
                logger.warning(
                    "Ignoring metadata update for %s from non-owner %s",
                    stream_id,
                    caller_connection_id,
                )
                return None
            if title is not None:
                session.title = title
            if description is not None:
                session.description = description
            return self._status(session)

    async def admit_listener(self, stream_id: str, connection_id: str) -> ListenerAdmission | None:
        """
        Join a connection into a live session's room as a listener.

        Returns:
            The admission details, or None if the stream is unknown or the
            connection is its owner. Nothing changes in that case.
        """
        async with self._locked(stream_id):
            session = self._sessions.get(stream_id)
            if session is None or session.owner_connection_id == connection_id:
                return None
            newly_joined = not self._registry.is_member(connection_id, stream_id)
            if newly_joined:
                self._registry.join(connection_id, stream_id)
                self._increment_locked(session)
            return ListenerAdmission(
                stream_id=stream_id,
                owner_connection_id=session.owner_connection_id,
                title=session.title,
                description=session.description,
                start_time=session.start_time,
                peak_listener_count=session.peak_listener_count,
                newly_joined=newly_joined,
            )

    async def release_listener(self, stream_id: str, connection_id: str) -> str | None:
        """
        Remove a listener from a session's room.

        Returns:
            The owner connection id to notify, or None if the connection was
            not a listener of a live session.
        """
        async with self._locked(stream_id):
            session = self._sessions.get(stream_id)
            if session is None or session.owner_connection_id == connection_id:
                return None
            if not self._registry.leave(connection_id, stream_id):
                return None
            self._decrement_locked(session)
            return session.owner_connection_id

    async def increment_listener(self, stream_id: str) -> int | None:
        """Count one more listener and return the peak, or None if unknown."""
        async with self._locked(stream_id):
            session = self._sessions.get(stream_id)
            if session is None:
                return None
            return self._increment_locked(session)

    async def decrement_listener(self, stream_id: str) -> int | None:
        """Count one listener less (never below zero) and return the current count."""
        async with self._locked(stream_id):
            session = self._sessions.get(stream_id)
            if session is None:
                return None
            return self._decrement_locked(session)

    @staticmethod
    def _increment_locked(session: Session) -> int:
        session.current_listener_count += 1
        session.peak_listener_count = max(
            session.peak_listener_count, session.current_listener_count
        )
        return session.peak_listener_count

    @staticmethod
    def _decrement_locked(session: Session) -> int:
        session.current_listener_count = max(0, session.current_listener_count - 1)
        return session.current_listener_count

    async def end_session(
        self,
        stream_id: str,
        reason: EndReason,
        *,
        caller_connection_id: str | None = None,
    ) -> HistoryRecord | None:
        """
        Tear a session down.

        When caller_connection_id is given, only the current owner may end the
        session; a stale former owner is ignored.

        Returns:
            The history record, or None if nothing was ended.
        """
        async with self._locked(stream_id):
            session = self._sessions.get(stream_id)
            if session is None:
                logger.debug("End of %s requested but it is not live", stream_id)
                return None
            if caller_connection_id is not None and (
                session.owner_connection_id != caller_connection_id
            ):
                logger.warning(
                    "Ignoring end of %s from non-owner %s", stream_id, caller_connection_id
                )
                return None
            return self._teardown_locked(session, reason)

    async def begin_grace(
        self,
        stream_id: str,
        connection_id: str,
        start_timer: Callable[[str], GraceTimer],
    ) -> bool:
        """
        Start the grace countdown after the owner's connection closed.

        Returns:
            True if a timer was started, False if the connection does not own
            the session or a countdown is already running.
        """
        async with self._locked(stream_id):
            session = self._sessions.get(stream_id)
            if session is None or session.owner_connection_id != connection_id:
                return False
            if session.pending_disconnect_timer is not None:
                return False
            self._registry.leave(connection_id, stream_id)
            session.pending_disconnect_timer = start_timer(stream_id)
            return True

    async def expire_grace(self, stream_id: str, timer: GraceTimer) -> HistoryRecord | None:
        """
        Tear the session down because its grace timer fired.

        The timer must still be the one recorded on the session; a cancelled or
        superseded timer, or a session that is already gone, is a no-op.
        """
        async with self._locked(stream_id):
            session = self._sessions.get(stream_id)
            if session is None or session.pending_disconnect_timer is not timer:
                logger.debug("Stale grace timer for %s ignored", stream_id)
                return None
            session.pending_disconnect_timer = None
            return self._teardown_locked(session, EndReason.OWNER_GRACE_EXPIRED)

    async def restore_sink(self, stream_id: str, caller_connection_id: str) -> bool:
        """
        Rebuild a dead sink for a live session on behalf of its owner.

        Returns:
            True if the session now has a live sink.
        """
        async with self._locked(stream_id):
            session = self._sessions.get(stream_id)
            if session is None or session.owner_connection_id != caller_connection_id:
                return False
            try:
                session.sink = await self._relay.ensure_sink(stream_id)
            except SinkUnavailableError:
                logger.warning("Could not rebuild sink for %s", stream_id)
                return False
            return True

    async def close(self) -> list[HistoryRecord]:
        """End every live session for server shutdown."""
        records = []
        for stream_id in list(self._sessions):
            record = await self.end_session(stream_id, EndReason.SERVER_SHUTDOWN)
            if record is not None:
                records.append(record)
        return records

    def _teardown_locked(self, session: Session, reason: EndReason) -> HistoryRecord:
        """Remove a session; runs once per session because it is removed first."""
        del self._sessions[session.stream_id]
        if session.pending_disconnect_timer is not None:
            session.pending_disconnect_timer.cancel()
            session.pending_disconnect_timer = None

        end_time = self._clock()
        record = HistoryRecord(
            stream_id=session.stream_id,
            title=session.title,
            description=session.description,
            start_time=session.start_time,
            end_time=end_time,
            duration=whole_seconds_between(session.start_time, end_time),
            peak_listener_count=session.peak_listener_count,
            owner_user_id=session.owner_user_id,
            reason=reason,
        )
        self._relay.release_sink(session.stream_id)
        session.sink = None
        members = self._registry.close_room(session.stream_id)
        logger.info(
            "Stream %s ended (%s) after %ds, peak %d listener(s)",
            session.stream_id,
            reason.value,
            record.duration,
            record.peak_listener_count,
        )
        if self._on_session_ended is not None:
            try:
                self._on_session_ended(record, members)
            except Exception:
                logger.exception("Error in session ended callback")
        return record

    # Readers

    def _status(self, session: Session) -> StreamStatus:
        return StreamStatus(
            stream_id=session.stream_id,
            title=session.title,
            description=session.description,
            start_time=session.start_time,
            listener_count=session.current_listener_count,
            peak_listener_count=session.peak_listener_count,
            owner_connection_id=session.owner_connection_id,
            owner_user_id=session.owner_user_id,
            pending_teardown=session.pending_teardown,
            sink_state=self._relay.sink_state(session.stream_id),
        )

    def get(self, stream_id: str) -> StreamStatus | None:
        """Return a snapshot of a live session, or None if not found."""
        session = self._sessions.get(stream_id)
        if session is None:
            return None
        return self._status(session)

    def list_active(self) -> list[ActiveStream]:
        """Return all live sessions, oldest first."""
        return [
            ActiveStream(
                stream_id=session.stream_id,
                title=session.title,
                description=session.description,
                start_time=session.start_time,
                listener_count=session.current_listener_count,
            )
            for session in sorted(self._sessions.values(), key=lambda s: s.start_time)
        ]

    def owner_of(self, stream_id: str) -> str | None:
        """Return the owner connection of a live session."""
        session = self._sessions.get(stream_id)
        return session.owner_connection_id if session is not None else None

    def streams_owned_by(self, connection_id: str) -> list[str]:
        """Return the stream ids a connection currently owns."""
        return [
            stream_id
            for stream_id, session in self._sessions.items()
            if session.owner_connection_id == connection_id
        ]

    def __contains__(self, stream_id: object) -> bool:
        return stream_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
