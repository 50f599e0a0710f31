"""Client for the pool2go relay.

Handles the client side of the protocol:
  Server → Client: identity offer (out-of-bounds location carrying the identity)
  Client → Server: the same identity echoed back
  Client → Server: current location
  Server → Client: a nearby location, or the sentinel
"""

from __future__ import annotations

import asyncio
import logging

from pool2go.protocol import LocationMessage, ProtocolError, read_message, send_message

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10.0


class RelayClientError(Exception):
    """Raised when the relay cannot be reached or refuses the handshake."""


class RelayClient:
    """One connection to a relay server, good for one location report."""

    def __init__(self, host: str, port: int, timeout: float = _DEFAULT_TIMEOUT) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._identity: str | None = None

    async def __aenter__(self) -> RelayClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def identity(self) -> str | None:
        return self._identity

    async def connect(self) -> str:
        """Open the socket and complete the handshake. Returns the identity."""
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise RelayClientError(f"Cannot connect to {self.host}:{self.port}: {exc}") from exc

        try:
            offer = await self._read()
            if offer.identity is None:
                raise RelayClientError("Relay refused the session")
            await self._send(offer)
        except RelayClientError:
            await self.close()
            raise
        self._identity = offer.identity
        logger.debug("Handshake complete (identity: %s)", self._identity)
        return self._identity

    async def report(self, latitude: float, longitude: float) -> LocationMessage | None:
        """Send our location; return a nearby one, or ``None`` for the sentinel."""
        if self._writer is None:
            raise RelayClientError("Not connected")
        await self._send(
            LocationMessage(identity=self._identity, latitude=latitude, longitude=longitude)
        )
        reply = await self._read()
        if reply.is_sentinel:
            return None
        return reply

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._reader = None
        self._writer = None

    # ── Protocol helpers ───────────────────────────────────────────

    async def _send(self, message: LocationMessage) -> None:
        try:
            await send_message(self._writer, message)
        except (ConnectionError, OSError) as exc:
            raise RelayClientError(f"Connection lost: {exc}") from exc

    async def _read(self) -> LocationMessage:
        try:
            return await read_message(self._reader, timeout=self.timeout)
        except (ProtocolError, asyncio.TimeoutError, ConnectionError, OSError) as exc:
            raise RelayClientError(f"Bad reply from relay: {exc!r}") from exc


async def lookup(
    host: str,
    port: int,
    latitude: float,
    longitude: float,
    timeout: float = _DEFAULT_TIMEOUT,
) -> LocationMessage | None:
    """Connect, report one location and return the relay's answer."""
    async with RelayClient(host, port, timeout=timeout) as client:
        return await client.report(latitude, longitude)
