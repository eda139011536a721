"""Debounces broadcaster disconnects so a network blip does not end a session."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .session import StreamSessionTable

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_S = 30.0


class GraceTimer:
    """
    Cancellable one-shot countdown owned by a single Session.

    Cancellation is O(1) and final: a cancelled timer never invokes its
    callback, even if its loop handle was already due.
    """

    _handle: asyncio.TimerHandle
    _cancelled: bool
    _fired: bool

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        callback: Callable[[GraceTimer], None],
    ) -> None:
        """Start counting down delay seconds on the given loop."""
        self._callback = callback
        self._cancelled = False
        self._fired = False
        self.deadline = loop.time() + delay
        self._handle = loop.call_later(delay, self._fire)

    @property
    def cancelled(self) -> bool:
        """Whether cancel() was called."""
        return self._cancelled

    @property
    def fired(self) -> bool:
        """Whether the countdown reached zero and ran its callback."""
        return self._fired

    def cancel(self) -> None:
        """Stop the countdown."""
        self._cancelled = True
        self._handle.cancel()

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._fired = True
        self._callback(self)


class DisconnectGraceManager:
    """
    Starts a grace countdown when a session owner's connection closes.

    Expiry runs through StreamSessionTable.expire_grace, which only tears the
    session down if this exact timer is still recorded on it. Resumption
    (create_or_resume) cancels and discards the timer under the same stream
    lock, so expiry and resumption can never both win.
    """

    _expiry_tasks: set[asyncio.Task[None]]

    def __init__(
        self,
        table: StreamSessionTable,
        *,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
    ) -> None:
        """
        Initialize the manager.

        Args:
            table: Session table that owns the timers.
            grace_period_s: Seconds an owner has to reconnect.
        """
        if grace_period_s < 0:
            raise ValueError("grace_period_s must not be negative")
        self._table = table
        self._grace_period_s = grace_period_s
        self._expiry_tasks = set()

    @property
    def grace_period_s(self) -> float:
        """Seconds an owner has to reconnect."""
        return self._grace_period_s

    async def owner_disconnected(self, stream_id: str, connection_id: str) -> bool:
        """
        Handle the close of a connection that may own stream_id.

        Listener disconnects never start a timer; the table ignores any
        connection that is not the current owner.

        Returns:
            True if a countdown was started.
        """
        started = await self._table.begin_grace(stream_id, connection_id, self._start_timer)
        if started:
            logger.info(
                "Owner of %s disconnected, ending in %.1fs unless it reconnects",
                stream_id,
                self._grace_period_s,
            )
        return started

    def _start_timer(self, stream_id: str) -> GraceTimer:
        loop = asyncio.get_running_loop()
        return GraceTimer(
            loop,
            self._grace_period_s,
            lambda timer: self._on_expired(loop, stream_id, timer),
        )

    def _on_expired(
        self, loop: asyncio.AbstractEventLoop, stream_id: str, timer: GraceTimer
    ) -> None:
        logger.debug("Grace period for %s elapsed", stream_id)
        task = loop.create_task(self._expire(stream_id, timer))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)

    async def _expire(self, stream_id: str, timer: GraceTimer) -> None:
        try:
            record = await self._table.expire_grace(stream_id, timer)
        except Exception:
            logger.exception("Error ending %s after grace period", stream_id)
            return
        if record is not None:
            logger.info("Owner of %s did not reconnect, session ended", stream_id)

    async def close(self) -> None:
        """Wait for expiries that are already running."""
        if self._expiry_tasks:
            await asyncio.gather(*self._expiry_tasks, return_exceptions=True)
