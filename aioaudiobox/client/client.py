"""AudioBox client implementation to connect to an AudioBox server."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, TypeVar

from aiohttp import ClientSession, ClientWebSocketResponse, WSMessage, WSMsgType

from aioaudiobox.models import pack_audio_chunk
from aioaudiobox.models.core import (
    ClientAnswerMessage,
    ClientCandidateMessage,
    ClientOfferMessage,
    EndStreamMessage,
    JoinStreamMessage,
    LeaveStreamMessage,
    ListenerConnectedMessage,
    SignalPayload,
    StartStreamMessage,
    StartStreamPayload,
    StreamRefPayload,
    UpdateMetadataMessage,
    UpdateMetadataPayload,
    WelcomeMessage,
)
from aioaudiobox.models.types import ClientMessage, ServerMessage

logger = logging.getLogger(__name__)

MAX_INBOX_SIZE = 1000

_MessageT = TypeVar("_MessageT", bound=ServerMessage)

# Callback invoked for every message received from the server.
MessageCallback = Callable[[ServerMessage], None]

# Callback invoked when the client disconnects from the server.
DisconnectCallback = Callable[[], None]


@dataclass(slots=True)
class _Waiter:
    message_type: type[ServerMessage]
    predicate: Callable[[Any], bool] | None
    future: asyncio.Future[ServerMessage]

    def matches(self, message: ServerMessage) -> bool:
        if not isinstance(message, self.message_type):
            return False
        return self.predicate is None or self.predicate(message)


class AudioBoxClient:
    """
    Async AudioBox client acting as a broadcaster, a listener, or both.

    Messages received from the server are handed to the registered message
    listeners. Messages nobody waited for are also kept in a small inbox so
    wait_for() can pick up replies that arrived before it was called.
    """

    _session: ClientSession | None
    """Optional aiohttp ClientSession for WebSocket connection."""
    _owns_session: bool
    """Whether this client owns and should close the session."""
    _ws: ClientWebSocketResponse | None = None
    """WebSocket connection to the server."""
    _connected: bool = False
    _connection_id: str | None = None
    """Connection id assigned by the server in its welcome message."""
    _welcome_event: asyncio.Event | None = None
    _reader_task: asyncio.Task[None] | None = None
    """Background task reading messages from server."""
    _send_lock: asyncio.Lock
    """Lock for serializing WebSocket message sends."""
    _inbox: deque[ServerMessage]
    """Received messages no waiter has claimed yet, oldest first."""
    _waiters: list[_Waiter]
    _message_callbacks: list[MessageCallback]
    """Callbacks invoked on every server message."""
    _disconnect_callbacks: list[DisconnectCallback]
    """Callbacks invoked when the client disconnects."""

    def __init__(self, *, session: ClientSession | None = None) -> None:
        """
        Create a new AudioBox client instance.

        Args:
            session: Optional aiohttp ClientSession. If None, a session is created
                and managed by this client.
        """
        self._session = session
        self._owns_session = session is None
        self._loop = asyncio.get_running_loop()
        self._send_lock = asyncio.Lock()
        self._inbox = deque(maxlen=MAX_INBOX_SIZE)
        self._waiters = []
        self._message_callbacks = []
        self._disconnect_callbacks = []

    @property
    def connected(self) -> bool:
        """Return True if the client currently has an active connection."""
        return self._connected and self._ws is not None and not self._ws.closed

    @property
    def connection_id(self) -> str | None:
        """Connection id assigned by the server, once connected."""
        return self._connection_id

    async def connect(self, url: str, timeout: float = 10) -> None:
        """Connect to an AudioBox server and wait for its welcome message."""
        if self.connected:
            logger.debug("Already connected")
            return

        if self._session is None:
            self._session = ClientSession()

        logger.info("Connecting to AudioBox server at %s", url)
        self._ws = await self._session.ws_connect(url, heartbeat=30)
        self._connected = True
        self._welcome_event = asyncio.Event()
        self._reader_task = self._loop.create_task(self._reader_loop())

        try:
            await asyncio.wait_for(self._welcome_event.wait(), timeout=timeout)
        except TimeoutError as err:
            await self.disconnect()
            raise TimeoutError("Timed out waiting for welcome message") from err
        logger.info("Connected as %s", self._connection_id)

    async def disconnect(self) -> None:
        """Disconnect from the server and release resources."""
        self._connected = False
        current_task = asyncio.current_task(loop=self._loop)

        if self._reader_task is not None:
            if self._reader_task is not current_task:
                self._reader_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._reader_task
            self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._welcome_event = None
        for waiter in self._waiters:
            if not waiter.future.done():
                waiter.future.set_exception(ConnectionError("Disconnected from server"))
        self._waiters.clear()

        self._notify_disconnect_callback()

    # Broadcaster

    async def start_stream(
        self,
        stream_id: str,
        title: str = "",
        description: str = "",
        owner_user_id: str | None = None,
    ) -> None:
        """Go live under stream_id, or resume it after a reconnect."""
        await self._send(
            StartStreamMessage(
                payload=StartStreamPayload(
                    stream_id=stream_id,
                    title=title,
                    description=description,
                    owner_user_id=owner_user_id,
                )
            )
        )

    async def update_metadata(
        self, stream_id: str, title: str | None = None, description: str | None = None
    ) -> None:
        """Change the title and/or description of an owned stream."""
        await self._send(
            UpdateMetadataMessage(
                payload=UpdateMetadataPayload(
                    stream_id=stream_id, title=title, description=description
                )
            )
        )

    async def end_stream(self, stream_id: str) -> None:
        """End an owned stream."""
        await self._send(EndStreamMessage(payload=StreamRefPayload(stream_id)))

    async def send_audio_chunk(self, stream_id: str, data: bytes) -> None:
        """Send encoded audio for an owned stream."""
        if not self._ws:
            raise RuntimeError("WebSocket is not connected")
        async with self._send_lock:
            await self._ws.send_bytes(pack_audio_chunk(stream_id, data))

    # Listener

    async def join_stream(self, stream_id: str) -> None:
        """Ask to listen to a live stream."""
        await self._send(JoinStreamMessage(payload=StreamRefPayload(stream_id)))

    async def leave_stream(self, stream_id: str) -> None:
        """Stop listening to a stream."""
        await self._send(LeaveStreamMessage(payload=StreamRefPayload(stream_id)))

    async def report_connected(self, stream_id: str) -> None:
        """Report that the peer connection for a stream carries audio."""
        await self._send(ListenerConnectedMessage(payload=StreamRefPayload(stream_id)))

    # Signaling

    async def send_offer(self, target_connection_id: str, payload: Any) -> None:
        """Send an SDP offer to a listener."""
        await self._send(
            ClientOfferMessage(
                payload=SignalPayload(target_connection_id=target_connection_id, payload=payload)
            )
        )

    async def send_answer(self, payload: Any, target_connection_id: str | None = None) -> None:
        """Send an SDP answer, to the broadcaster of the joined stream by default."""
        await self._send(
            ClientAnswerMessage(
                payload=SignalPayload(target_connection_id=target_connection_id, payload=payload)
            )
        )

    async def send_candidate(
        self, payload: Any, target_connection_id: str | None = None
    ) -> None:
        """Send an ICE candidate to a peer."""
        await self._send(
            ClientCandidateMessage(
                payload=SignalPayload(target_connection_id=target_connection_id, payload=payload)
            )
        )

    # Receiving

    async def wait_for(
        self,
        message_type: type[_MessageT],
        predicate: Callable[[_MessageT], bool] | None = None,
        timeout: float = 5,
    ) -> _MessageT:
        """
        Return the next message of a type, optionally matching a predicate.

        Messages that arrived before this call and were not claimed yet are
        considered first.

        Raises:
            TimeoutError: If no such message arrives within timeout seconds.
        """
        waiter = _Waiter(message_type, predicate, self._loop.create_future())
        for message in self._inbox:
            if waiter.matches(message):
                self._inbox.remove(message)
                return message  # type: ignore[return-value]
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter.future, timeout=timeout)  # type: ignore[return-value]
        finally:
            with suppress(ValueError):
                self._waiters.remove(waiter)

    def add_message_listener(self, callback: MessageCallback) -> Callable[[], None]:
        """
        Register a callback invoked for every message from the server.

        Returns a function to remove the listener.
        """
        self._message_callbacks.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._message_callbacks.remove(callback)

        return _remove

    def add_disconnect_listener(self, callback: DisconnectCallback) -> Callable[[], None]:
        """
        Register a callback invoked when the connection closes.

        Returns a function to remove the listener.
        """
        self._disconnect_callbacks.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._disconnect_callbacks.remove(callback)

        return _remove

    async def _send(self, message: ClientMessage) -> None:
        if not self._ws:
            raise RuntimeError("WebSocket is not connected")
        async with self._send_lock:
            await self._ws.send_str(message.to_json())

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                await self._handle_ws_message(msg)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("WebSocket reader encountered an error")
        finally:
            if self._connected:
                await self.disconnect()

    async def _handle_ws_message(self, msg: WSMessage) -> None:
        if msg.type is WSMsgType.TEXT:
            self._handle_json_message(msg.data)
        elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
            logger.info("WebSocket closed by server")
            await self.disconnect()
        elif msg.type is WSMsgType.ERROR:
            logger.error("WebSocket error: %s", self._ws.exception() if self._ws else "unknown")
            await self.disconnect()
        else:
            logger.debug("Ignoring unexpected %s frame", msg.type.name)

    def _handle_json_message(self, data: str) -> None:
        try:
            message = ServerMessage.from_json(data)
        except Exception:
            logger.exception("Failed to parse server message: %s", data)
            return

        if isinstance(message, WelcomeMessage):
            self._connection_id = message.payload.connection_id
            if self._welcome_event is not None:
                self._welcome_event.set()
            return

        self._notify_message_callback(message)
        for waiter in self._waiters:
            if not waiter.future.done() and waiter.matches(message):
                waiter.future.set_result(message)
                return
        self._inbox.append(message)

    def _notify_message_callback(self, message: ServerMessage) -> None:
        for callback in list(self._message_callbacks):
            try:
                callback(message)
            except Exception:
                logger.exception("Error in message callback %s", callback)

    def _notify_disconnect_callback(self) -> None:
        for callback in list(self._disconnect_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Error in disconnect callback %s", callback)
