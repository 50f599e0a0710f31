"""pool2go relay entry point.

Usage:
    python -m pool2go --path ./data --filename pool2go.sqlite --port 8082
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import platform
import signal
import sys
import threading
from typing import Callable

from pool2go.config import RelayConfig, resolve_db_path
from pool2go.server import RelayServer, RelayStartupError

logger = logging.getLogger("pool2go")

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pool2go", description="pool2go proximity relay")
    parser.add_argument("--path", "-a", default=None, help="Directory for the SQLite database")
    parser.add_argument("--filename", "-f", default=None, help="File name (with extension) for the SQLite database")
    parser.add_argument("--port", "-p", type=int, default=None, help="Port number for the relay")
    parser.add_argument("--host", default=None, help="Interface to bind (default: 0.0.0.0)")
    parser.add_argument("--config", "-c", default=None, help="Path to config.json")
    parser.add_argument("--admin-port", type=int, default=None, help="Serve the read-only admin API on this port")
    parser.add_argument("--log-file", default=None, help="Also write a full DEBUG log to this file")
    parser.add_argument(
        "--no-console",
        action="store_true",
        help="Do not watch stdin for 'quit' (run until SIGINT/SIGTERM)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def build_config(args: argparse.Namespace) -> RelayConfig:
    config = RelayConfig.load(args.config) if args.config else RelayConfig()
    config.apply_env()
    if args.path or args.filename:
        config.db_path = str(resolve_db_path(args.path, args.filename))
    if args.port is not None:
        config.port = args.port
    if args.host:
        config.host = args.host
    if args.admin_port is not None:
        config.admin_port = args.admin_port
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.log_level = "DEBUG"
    return config


def configure_logging(level: str, log_file: str = "") -> None:
    """Console at *level*; optional file handler that records everything."""
    console_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=console_level,
        format=_LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
    if log_file:
        root = logging.getLogger()
        for handler in root.handlers:
            handler.setLevel(console_level)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(file_handler)
        root.setLevel(logging.DEBUG)


def _watch_console(request_stop: Callable[[str], None]) -> None:
    """Stop the relay when 'quit' is typed or stdin closes."""
    for line in sys.stdin:
        if line.strip().lower() == "quit":
            request_stop("quit typed on console")
            return
    request_stop("stdin closed")


async def run(config: RelayConfig, console: bool = True) -> None:
    server = RelayServer(config)
    await server.start()

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def _request_stop(reason: str) -> None:
        logger.info("Stop requested: %s", reason)
        loop.call_soon_threadsafe(stop_requested.set)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, f"signal {sig.name}")
        except NotImplementedError:
            pass  # Windows

    if console:
        print("Type 'quit' to stop server")
        threading.Thread(target=_watch_console, args=(_request_stop,), daemon=True).start()

    serve_task = asyncio.create_task(server.serve_forever())
    stop_task = asyncio.create_task(stop_requested.wait())
    waiters = {serve_task, stop_task}

    admin = None
    if config.admin_port is not None:
        import uvicorn

        from pool2go.admin_api import create_app

        admin = uvicorn.Server(uvicorn.Config(
            create_app(server),
            host=config.host,
            port=config.admin_port,
            log_level=config.log_level.lower(),
        ))
        waiters.add(asyncio.create_task(admin.serve()))
        logger.info("Admin API on %s:%d", config.host, config.admin_port)

    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        await server.stop()
        stop_task.cancel()
        if admin is not None:
            admin.should_exit = True
        await asyncio.wait(waiters)

    if serve_task.exception() is not None:
        raise serve_task.exception()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = build_config(args)
    configure_logging(config.log_level, config.log_file)

    logger.info("Running on host type %s", platform.system())
    logger.info(
        "Database: %s | Port: %d | Read timeout: %s",
        config.db_path, config.port, config.read_timeout,
    )

    try:
        asyncio.run(run(config, console=not args.no_console))
    except RelayStartupError as exc:
        logger.error("Could not start relay: %s", exc)
        return 1
    except OSError as exc:
        logger.error("Relay listener failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
