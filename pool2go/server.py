"""Relay listener — accepts TCP connections and runs one session per socket.

The :class:`RelayServer` object owns everything the relay needs while it is
up: the listening socket, the location store, the identity issuer, session
tasks and counters. Nothing is kept in module globals.

Usage::

    server = RelayServer(RelayConfig())
    await server.start(8082, "/srv/pool2go/pool2go.sqlite")
    try:
        await server.serve_forever()
    finally:
        await server.stop()
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from pool2go.config import RelayConfig
from pool2go.db import LocationStore, StoreError, open_store
from pool2go.identity import IdentityIssuer
from pool2go.protocol import MAX_LINE_BYTES
from pool2go.session import Outcome, Session, SessionResult

logger = logging.getLogger(__name__)


class RelayStartupError(Exception):
    """The storage location could not be opened or the port could not be bound."""


@dataclass
class RelayStats:
    """Session counters since the server started."""

    accepted: int = 0
    completed: int = 0
    failed: int = 0
    handshake_failures: int = 0
    store_failures: int = 0
    matches: int = 0
    empty: int = 0

    def record(self, result: SessionResult) -> None:
        if result.outcome is Outcome.FAILED:
            self.failed += 1
            if result.handshake_failed:
                self.handshake_failures += 1
            if result.store_failed:
                self.store_failures += 1
            return
        self.completed += 1
        if result.outcome is Outcome.MATCH:
            self.matches += 1
        else:
            self.empty += 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RelayServer:
    """Single-listener relay server."""

    def __init__(self, config: RelayConfig | None = None) -> None:
        self.config = config or RelayConfig()
        self.store: LocationStore | None = None
        self.stats = RelayStats()
        self._issuer = IdentityIssuer()
        self._sock: socket.socket | None = None
        self._accept_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._sessions: set[asyncio.Task] = set()
        self._stopping = False
        self._closed = asyncio.Event()

    @property
    def port(self) -> int | None:
        """The bound port (useful when started on port 0)."""
        if self._sock is None:
            return None
        return self._sock.getsockname()[1]

    @property
    def running(self) -> bool:
        return self._accept_task is not None and not self._accept_task.done()

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self, port: int | None = None, storage_path: str | Path | None = None) -> None:
        """Open the store, bind the port and begin accepting.

        Raises:
            RelayStartupError: storage or socket could not be set up.
        """
        if self._accept_task is not None:
            raise RuntimeError("RelayServer already started")
        port = self.config.port if port is None else port
        path = Path(storage_path or self.config.db_path)

        try:
            self.store = open_store(path, tolerance=self.config.tolerance)
        except StoreError as exc:
            raise RelayStartupError(f"Could not create database at {path}: {exc}") from exc

        try:
            sock = socket.create_server((self.config.host, port))
        except OSError as exc:
            logger.error("Could not bind %s:%d: %s", self.config.host, port, exc)
            self.store.close()
            self.store = None
            raise RelayStartupError(f"Could not bind port {port}: {exc}") from exc
        sock.setblocking(False)
        self._sock = sock
        self._stopping = False
        self._closed.clear()

        self._accept_task = asyncio.create_task(self._accept_loop(), name="pool2go-accept")
        self._accept_task.add_done_callback(self._on_accept_done)
        logger.info("Relay listening on %s:%d (store: %s)", self.config.host, self.port, path)

    async def serve_forever(self) -> None:
        """Block until :meth:`stop` is called or the listener fails.

        Raises:
            OSError: accepting a connection failed (the server is stopped
                before the error is raised).
        """
        if self._accept_task is None:
            raise RuntimeError("RelayServer not started")
        task = self._accept_task
        await asyncio.wait([task])
        if not task.cancelled() and task.exception() is not None:
            await self.stop()
            if self._stop_task is not None:
                await self._stop_task
            raise task.exception()
        await self._closed.wait()

    async def stop(self) -> None:
        """Stop accepting, finish or cancel sessions, release socket and store."""
        if self._stopping:
            await self._closed.wait()
            return
        self._stopping = True
        logger.info("Relay stopping")

        if self._accept_task is not None and not self._accept_task.done():
            self._accept_task.cancel()
            await asyncio.wait([self._accept_task])

        if self._sock is not None:
            self._sock.close()
            self._sock = None

        await self._drain_sessions()

        if self.store is not None:
            self.store.close()
            self.store = None
        self._closed.set()
        logger.info("Relay stopped")

    # ── Accept loop ────────────────────────────────────────────────

    async def _accept_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                conn, address = await loop.sock_accept(self._sock)
            except OSError as exc:
                logger.error("Accept failed, relay listener terminating: %s", exc)
                raise
            host = address[0] if isinstance(address, tuple) else str(address)
            task = asyncio.create_task(self._handle_connection(conn, host))
            self._sessions.add(task)
            task.add_done_callback(self._sessions.discard)

    def _on_accept_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        if not self._stopping and self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self.stop())

    async def _handle_connection(self, conn: socket.socket, host: str) -> None:
        identity = self._issuer.issue(host)
        self.stats.accepted += 1
        logger.info("New connection opened with client at %s (identity: %s)", host, identity)
        try:
            reader, writer = await asyncio.open_connection(sock=conn, limit=MAX_LINE_BYTES)
        except OSError:
            logger.exception("Could not set up streams for %s", host)
            conn.close()
            self.stats.failed += 1
            return

        session = Session(
            reader,
            writer,
            self.store,
            identity,
            handshake_attempts=self.config.handshake_attempts,
            read_timeout=self.config.read_timeout,
        )
        try:
            result = await session.run()
        except Exception:
            logger.exception("Unexpected error in session %s", identity)
            self.stats.failed += 1
            return
        self.stats.record(result)
        logger.info("Session %s finished: %s", identity, result.outcome.value)

    async def _drain_sessions(self) -> None:
        if not self._sessions:
            return
        pending = set(self._sessions)
        logger.info("Waiting up to %.1fs for %d session(s)", self.config.shutdown_grace, len(pending))
        _, still_running = await asyncio.wait(pending, timeout=self.config.shutdown_grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.wait(still_running)
            logger.warning("Cancelled %d unfinished session(s)", len(still_running))
