"""Represents a single WebSocket connection to the AudioBox server."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import suppress
from typing import TYPE_CHECKING, cast

from aiohttp import WSMsgType, web

from aioaudiobox.models import unpack_audio_chunk
from aioaudiobox.models.core import WelcomeMessage, WelcomePayload
from aioaudiobox.models.types import ClientMessage, ServerMessage

if TYPE_CHECKING:
    from .coordinator import StreamCoordinator

MAX_PENDING_MSG = 4096

logger = logging.getLogger(__name__)


class AudioBoxConnection:
    """
    A broadcaster or listener connected to an AudioBoxServer.

    The role is not fixed: the same connection may own one stream and listen
    to others. Incoming frames are handed to the coordinator, outgoing
    messages go through a bounded queue drained by a writer task.
    """

    _writer_task: asyncio.Task[None] | None = None
    """Task responsible for sending JSON messages."""
    _message_loop_task: asyncio.Task[None] | None = None
    """Task responsible for receiving and processing messages."""
    _to_write: asyncio.Queue[ServerMessage]
    """Queue for messages to be sent to the peer through the WebSocket."""
    _closing: bool = False
    _disconnecting: bool = False
    """Flag to prevent multiple concurrent disconnect tasks."""
    _logger: logging.Logger

    def __init__(
        self,
        coordinator: StreamCoordinator,
        request: web.Request,
        *,
        max_pending_messages: int = MAX_PENDING_MSG,
    ) -> None:
        """
        DO NOT CALL THIS CONSTRUCTOR. INTERNAL USE ONLY.

        Use AudioBoxServer.on_connection instead.

        Args:
            coordinator: Coordinator receiving this connection's messages.
            request: The HTTP request being upgraded to a WebSocket.
            max_pending_messages: Outgoing messages queued before the
                connection is considered too slow and closed.
        """
        self._coordinator = coordinator
        self._request = request
        self._connection_id = uuid.uuid4().hex
        self._wsock = web.WebSocketResponse(heartbeat=55)
        self._logger = logger.getChild(self._connection_id)
        self._to_write = asyncio.Queue(maxsize=max_pending_messages)
        self._closing = False
        self._disconnecting = False
        self._logger.debug("Connection initialized for %s", request.remote)

    @property
    def connection_id(self) -> str:
        """Server assigned identifier of this connection."""
        return self._connection_id

    @property
    def websocket(self) -> web.WebSocketResponse:
        """The underlying WebSocket response."""
        return self._wsock

    @property
    def closing(self) -> bool:
        """Whether the connection is shutting down."""
        return self._closing

    async def disconnect(self) -> None:
        """Close the connection and let the coordinator clean up after it."""
        self._closing = True
        self._disconnecting = True
        self._logger.debug("Disconnecting")

        if self._writer_task and not self._writer_task.done():
            self._logger.debug("Cancelling writer task")
            self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task
        if self._message_loop_task and not self._message_loop_task.done():
            self._logger.debug("Cancelling message loop task")
            self._message_loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._message_loop_task

        if not self._wsock.closed:
            await self._wsock.close()

        await self._coordinator.connection_closed(self._connection_id)
        self._logger.info("Connection closed")

    async def flush(self, timeout: float = 1.0) -> None:
        """Wait until queued messages were written, at most timeout seconds."""
        if self._writer_task is None or self._writer_task.done():
            return
        try:
            async with asyncio.timeout(timeout):
                await self._to_write.join()
        except TimeoutError:
            self._logger.debug("Timeout flushing %d message(s)", self._to_write.qsize())

    async def _setup_connection(self) -> None:
        """Establish the WebSocket connection and greet the peer."""
        try:
            async with asyncio.timeout(10):
                await self._wsock.prepare(self._request)
        except TimeoutError:
            self._logger.warning("Timeout preparing request")
            raise

        self._logger.info("Connection established from %s", self._request.remote)

        self._logger.debug("Creating writer task")
        self._writer_task = asyncio.get_running_loop().create_task(self._writer())
        self._coordinator.register_connection(self._connection_id, self.send_message)
        self.send_message(
            WelcomeMessage(payload=WelcomePayload(connection_id=self._connection_id))
        )

    async def _run_message_loop(self) -> None:
        """Run the main message processing loop."""
        try:
            async for msg in self._wsock:
                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break

                if msg.type == WSMsgType.BINARY:
                    self._handle_binary(cast("bytes", msg.data))
                    continue

                if msg.type != WSMsgType.TEXT:
                    continue

                try:
                    message = ClientMessage.from_json(cast("str", msg.data))
                except (ValueError, LookupError, TypeError) as err:
                    self._logger.warning("Dropping malformed message: %s", err)
                    continue
                try:
                    await self._coordinator.dispatch(self._connection_id, message)
                except Exception:
                    self._logger.exception("Error handling %s", type(message).__name__)
            self._logger.debug("wsock was closed")

        except asyncio.CancelledError:
            self._logger.debug("Message loop cancelled")
        except Exception:
            self._logger.exception("Unexpected error inside websocket API")
        finally:
            # Cancel the writer when message loop exits
            if self._writer_task and not self._writer_task.done():
                self._logger.debug("Message loop finished, cancelling writer")
                self._writer_task.cancel()

    def _handle_binary(self, frame: bytes) -> None:
        try:
            chunk = unpack_audio_chunk(frame)
        except ValueError as err:
            self._logger.warning("Dropping malformed binary frame: %s", err)
            return
        self._coordinator.forward_audio(self._connection_id, chunk.stream_id, chunk.data)

    async def _cleanup_connection(self) -> None:
        """Clean up WebSocket connection and tasks."""
        try:
            if not self._wsock.closed:
                await self._wsock.close()
        except Exception:
            self._logger.exception("Failed to close websocket")
        await self.disconnect()

    async def handle(self) -> web.WebSocketResponse:
        """
        Handle the complete websocket connection lifecycle.

        Returns:
            The WebSocket response to hand back to aiohttp.
        """
        try:
            await self._setup_connection()

            # Run the main message loop as a task so writer can cancel it
            self._message_loop_task = asyncio.get_running_loop().create_task(
                self._run_message_loop()
            )
            try:
                await self._message_loop_task
            except asyncio.CancelledError:
                self._logger.debug("Message loop task was cancelled")
        finally:
            await self._cleanup_connection()
        return self._wsock

    async def _writer(self) -> None:
        """Write outgoing messages from the queue."""
        try:
            while not self._wsock.closed and not self._closing:
                item = await self._to_write.get()
                try:
                    await self._wsock.send_str(item.to_json())
                except ConnectionError:
                    self._logger.warning("Connection error sending JSON data, ending writer task")
                    break
                finally:
                    self._to_write.task_done()
            self._logger.debug("WebSocket connection was closed, ending writer task")
        except Exception:
            self._logger.exception("Error in writer task")
        finally:
            # Cancel the message loop when writer exits
            if self._message_loop_task and not self._message_loop_task.done():
                self._logger.debug("Writer finished, cancelling message loop")
                self._message_loop_task.cancel()

    def send_message(self, message: ServerMessage) -> None:
        """Enqueue a message to be sent to the peer."""
        try:
            self._to_write.put_nowait(message)
        except asyncio.QueueFull:
            # Only trigger disconnect once, even if queue fills repeatedly
            if not self._disconnecting:
                self._disconnecting = True
                self._logger.error("Message queue full, peer too slow - disconnecting")
                task = asyncio.get_running_loop().create_task(self.disconnect())
                task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)
            return
        self._logger.debug("Enqueueing message: %s", type(message).__name__)
