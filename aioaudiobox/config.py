"""Server configuration."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, get_args, get_type_hints

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

logger = logging.getLogger(__name__)

ENV_PREFIX = "AUDIOBOX_"

DEFAULT_PORT = 8080
DEFAULT_WS_PATH = "/ws"
DEFAULT_HLS_DIR = "hls"


@dataclass
class ServerConfig(DataClassORJSONMixin):
    """
    Settings of one AudioBox server.

    Loaded from a JSON document with ServerConfig.load(path) or
    ServerConfig.from_json(text), or from AUDIOBOX_* environment variables with
    ServerConfig.from_env(). Unknown keys are ignored.
    """

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    ws_path: str = DEFAULT_WS_PATH
    """Path of the signaling WebSocket endpoint."""
    grace_period_s: float = 30.0
    """Seconds a disconnected broadcaster has to resume its stream."""
    max_buffered_chunks: int = 256
    """Audio chunks kept per stream while its transcoder is not running."""
    max_pending_messages: int = 4096
    """Outgoing messages queued per connection before it is dropped."""
    sink_retry_interval_s: float = 5.0
    """Minimum delay between two attempts to rebuild a dead transcoder."""
    hls_dir: str = DEFAULT_HLS_DIR
    """Directory the transcoder writes playlists to, served under /hls."""
    ffmpeg_path: str = "ffmpeg"
    history_path: str | None = None
    """SQLite database for stream history; history is kept in memory if unset."""
    history_queue_size: int = 1024
    history_default_limit: int = 50
    history_max_limit: int = 500
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate field values."""
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if not self.ws_path.startswith("/"):
            raise ValueError("ws_path must start with '/'")
        if self.grace_period_s < 0:
            raise ValueError("grace_period_s must not be negative")
        if self.max_buffered_chunks <= 0 or self.max_pending_messages <= 0:
            raise ValueError("queue sizes must be positive")
        if not 0 < self.history_default_limit <= self.history_max_limit:
            raise ValueError("history_default_limit must be between 1 and history_max_limit")

    class Config(BaseConfig):
        """Config for parsing json documents."""

        omit_none = True

    @classmethod
    def load(cls, path: str | Path) -> ServerConfig:
        """Read a JSON configuration file."""
        config = cls.from_json(Path(path).read_text(encoding="utf-8"))
        logger.debug("Loaded configuration from %s", path)
        return config

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServerConfig:
        """
        Build a configuration from AUDIOBOX_* environment variables.

        AUDIOBOX_GRACE_PERIOD_S sets grace_period_s and so on; unset variables
        keep their defaults and an empty AUDIOBOX_HISTORY_PATH means in-memory
        history.
        """
        environ = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        hints = get_type_hints(cls)
        for field in fields(cls):
            name = ENV_PREFIX + field.name.upper()
            value = environ.get(name)
            if value is None:
                continue
            hint = hints[field.name]
            args = get_args(hint)
            if type(None) in args:
                if not value:
                    data[field.name] = None
                    continue
                hint = next(arg for arg in args if arg is not type(None))
            try:
                if hint in (int, float):
                    data[field.name] = hint(value)
                else:
                    data[field.name] = value
            except ValueError as err:
                raise ValueError(f"Invalid value for {name}: {value!r}") from err
        return cls(**data)
