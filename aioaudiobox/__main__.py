"""Run an AudioBox server: python -m aioaudiobox."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from aioaudiobox.config import ServerConfig
from aioaudiobox.server import AudioBoxServer

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="AudioBox live audio broadcast server")
    parser.add_argument(
        "--config",
        default=None,
        help="JSON configuration file (defaults to AUDIOBOX_* environment variables)",
    )
    parser.add_argument("--host", default=None, help="Address to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to bind")
    parser.add_argument("--hls-dir", default=None, help="Directory for HLS output")
    parser.add_argument(
        "--history-db", default=None, help="SQLite file for stream history"
    )
    parser.add_argument(
        "--grace-period",
        type=float,
        default=None,
        help="Seconds a disconnected broadcaster has to resume",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    return parser.parse_args()


def configure_from_args(args: argparse.Namespace) -> ServerConfig:
    if args.config:
        config = ServerConfig.load(Path(args.config).expanduser())
    else:
        config = ServerConfig.from_env()

    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.hls_dir is not None:
        config.hls_dir = args.hls_dir
    if args.history_db is not None:
        config.history_path = args.history_db
    if args.grace_period is not None:
        config.grace_period_s = args.grace_period
    if args.log_level is not None:
        config.log_level = args.log_level
    return config


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


async def serve(config: ServerConfig) -> None:
    loop = asyncio.get_running_loop()
    Path(config.hls_dir).mkdir(parents=True, exist_ok=True)
    server = AudioBoxServer(loop, config)
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await server.start_server()
    try:
        await stop.wait()
        logger.info("Stop requested")
    finally:
        await server.close()


def main() -> None:
    args = parse_args()
    config = configure_from_args(args)
    configure_logging(config.log_level)
    asyncio.run(serve(config))


if __name__ == "__main__":
    main()
