"""AudioBox Server: the aiohttp application around the stream coordinator."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from aiohttp import web

from aioaudiobox.config import ServerConfig

from .connection import AudioBoxConnection
from .coordinator import StreamCoordinator
from .history import HistoryStore, MemoryHistoryStore, SqliteHistoryStore
from .sink import SinkFactory, ffmpeg_sink_factory

logger = logging.getLogger(__name__)


class AudioBoxServer:
    """
    Signaling, HLS and query server for live audio broadcasts.

    Broadcasters and listeners connect over one WebSocket endpoint. Live
    sessions and their history are also exposed as JSON over HTTP, and the
    transcoder output is served as static files under /hls.
    """

    _connections: set[AudioBoxConnection]
    """All open WebSocket connections."""
    _loop: asyncio.AbstractEventLoop
    _app: web.Application | None
    """Web application instance for the server."""
    _app_runner: web.AppRunner | None
    """App runner for the web application."""
    _tcp_site: web.TCPSite | None
    """TCP site for the web application."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        config: ServerConfig | None = None,
        *,
        sink_factory: SinkFactory | None = None,
        history_store: HistoryStore | None = None,
    ) -> None:
        """
        Initialize a new AudioBox Server.

        Args:
            loop: The asyncio event loop to use for asynchronous operations.
            config: Server settings, defaults if None.
            sink_factory: Creates transcoding sinks. Defaults to one ffmpeg
                process per stream writing HLS into config.hls_dir.
            history_store: Storage for finished sessions. Defaults to SQLite
                at config.history_path, or memory if that is unset.
        """
        self._loop = loop
        self._config = config if config is not None else ServerConfig()
        if sink_factory is None:
            sink_factory = ffmpeg_sink_factory(
                self._config.ffmpeg_path, Path(self._config.hls_dir)
            )
        if history_store is None:
            if self._config.history_path:
                history_store = SqliteHistoryStore(self._config.history_path)
            else:
                history_store = MemoryHistoryStore()
        self._coordinator = StreamCoordinator(
            sink_factory,
            history_store,
            grace_period_s=self._config.grace_period_s,
            max_buffered_chunks=self._config.max_buffered_chunks,
            history_queue_size=self._config.history_queue_size,
            sink_retry_interval_s=self._config.sink_retry_interval_s,
        )
        self._connections = set()
        self._app = None
        self._app_runner = None
        self._tcp_site = None
        logger.debug("AudioBoxServer initialized: %s", self._config)

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """Read-only access to the event loop used by this server."""
        return self._loop

    @property
    def config(self) -> ServerConfig:
        """The server settings."""
        return self._config

    @property
    def coordinator(self) -> StreamCoordinator:
        """The stream coordinator behind this server."""
        return self._coordinator

    @property
    def connections(self) -> set[AudioBoxConnection]:
        """Get the set of all open connections."""
        return self._connections

    def _create_web_application(self) -> web.Application:
        """
        Create and configure the aiohttp web application.

        Returns:
            Configured aiohttp web.Application instance.
        """
        app = web.Application()
        app.router.add_get(self._config.ws_path, self.on_connection)
        app.router.add_get("/api/active-streams", self.on_active_streams)
        app.router.add_get("/api/streams/{stream_id}", self.on_stream_status)
        app.router.add_get("/api/history", self.on_history)
        hls_dir = Path(self._config.hls_dir)
        if hls_dir.is_dir():
            app.router.add_static("/hls", hls_dir)
        else:
            logger.debug("HLS directory %s does not exist, not serving /hls", hls_dir)
        return app

    async def on_connection(self, request: web.Request) -> web.StreamResponse:
        """Handle an incoming WebSocket connection from a broadcaster or listener."""
        logger.debug("Incoming connection from %s", request.remote)
        connection = AudioBoxConnection(
            self._coordinator,
            request,
            max_pending_messages=self._config.max_pending_messages,
        )
        self._connections.add(connection)
        try:
            return await connection.handle()
        finally:
            self._connections.discard(connection)

    async def on_active_streams(self, request: web.Request) -> web.Response:
        """List the live sessions."""
        return web.json_response(
            [stream.to_dict() for stream in self._coordinator.list_active_streams()]
        )

    async def on_stream_status(self, request: web.Request) -> web.Response:
        """Return the live status of one session."""
        status = self._coordinator.get_stream_status(request.match_info["stream_id"])
        if status is None:
            return web.json_response({"error": "stream not found"}, status=404)
        return web.json_response(status.to_dict())

    async def on_history(self, request: web.Request) -> web.Response:
        """Return the newest history records, optionally for one user."""
        raw_limit = request.query.get("limit")
        limit = self._config.history_default_limit
        if raw_limit is not None:
            try:
                limit = int(raw_limit)
            except ValueError:
                return web.json_response({"error": "invalid limit"}, status=400)
            if limit < 1:
                return web.json_response({"error": "invalid limit"}, status=400)
        limit = min(limit, self._config.history_max_limit)
        owner_user_id = request.query.get("userId") or None
        records = await self._coordinator.get_history(limit, owner_user_id)
        return web.json_response([record.to_dict() for record in records])

    async def start_server(self) -> None:
        """Start the coordinator and listen on the configured host and port."""
        if self._app is not None:
            logger.warning("Server is already running")
            return

        host = self._config.host
        port = self._config.port
        logger.info("Starting AudioBox server on port %d", port)
        self._coordinator.start()
        self._app = self._create_web_application()
        self._app_runner = web.AppRunner(self._app)
        await self._app_runner.setup()

        try:
            self._tcp_site = web.TCPSite(
                self._app_runner,
                host=host if host != "0.0.0.0" else None,
                port=port,
            )
            await self._tcp_site.start()
            logger.info("AudioBox server started successfully on %s:%d", host, port)
        except OSError as e:
            logger.error("Failed to start server on %s:%d: %s", host, port, e)
            if self._app_runner:
                await self._app_runner.cleanup()
                self._app_runner = None
            if self._app:
                await self._app.shutdown()
                self._app = None
            raise

    async def stop_server(self) -> None:
        """Stop the HTTP server."""
        if self._tcp_site:
            await self._tcp_site.stop()
            self._tcp_site = None
            logger.debug("TCP site stopped")

        if self._app_runner:
            await self._app_runner.cleanup()
            self._app_runner = None
            logger.debug("App runner cleaned up")

        if self._app:
            await self._app.shutdown()
            self._app = None

    async def close(self) -> None:
        """
        Close the server and cleanup resources.

        Live sessions end with server-shutdown before the connections are
        closed, so every room still gets its stream-ended message.
        """
        await self._coordinator.close()

        connections = list(self._connections)
        await asyncio.gather(
            *(connection.flush() for connection in connections), return_exceptions=True
        )
        results = await asyncio.gather(
            *(connection.disconnect() for connection in connections), return_exceptions=True
        )
        for connection, result in zip(connections, results, strict=True):
            if isinstance(result, Exception):
                logger.warning(
                    "Error disconnecting connection %s: %s", connection.connection_id, result
                )

        await self.stop_server()
