"""Per-connection protocol: handshake, one location update, one reply.

States: HANDSHAKE_OFFERED → HANDSHAKE_CONFIRMED → AWAITING_UPDATE → RESPONDED → CLOSED
                                                                    ↘ FAILED (from any state)

  Server offers the session identity inside an out-of-bounds location
  Client echoes it back (up to ``handshake_attempts`` tries)
  Client sends its real coordinates
  Server stores them and replies with a nearby location, or the sentinel

Failures never propagate out of :meth:`Session.run`: the client gets the
sentinel (when the socket still works) and the session ends.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass

from pool2go.db import LocationRecord, LocationStore, StoreError
from pool2go.protocol import LocationMessage, ProtocolError, read_message, send_message

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_ATTEMPTS = 6  # first try + 5 retries


class SessionState(enum.Enum):
    HANDSHAKE_OFFERED = "handshake_offered"
    HANDSHAKE_CONFIRMED = "handshake_confirmed"
    AWAITING_UPDATE = "awaiting_update"
    RESPONDED = "responded"
    CLOSED = "closed"
    FAILED = "failed"


class Outcome(enum.Enum):
    MATCH = "match"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass
class SessionResult:
    """What happened on one connection."""

    identity: str
    state: SessionState
    outcome: Outcome
    match: LocationRecord | None = None
    reason: str = ""
    handshake_attempts: int = 0
    failed_in: SessionState | None = None

    @property
    def handshake_failed(self) -> bool:
        return self.failed_in is SessionState.HANDSHAKE_OFFERED

    @property
    def store_failed(self) -> bool:
        return self.reason.startswith("store ")


class _SessionFailed(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class Session:
    """Drives one accepted connection through the relay protocol."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        store: LocationStore,
        identity: str,
        *,
        handshake_attempts: int = DEFAULT_HANDSHAKE_ATTEMPTS,
        read_timeout: float | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.store = store
        self.identity = identity
        self.handshake_attempts = handshake_attempts
        self.read_timeout = read_timeout
        self.state = SessionState.HANDSHAKE_OFFERED
        self._attempts = 0
        self._failed_in: SessionState | None = None

    async def run(self) -> SessionResult:
        try:
            await self._handshake()
            record = await self._receive_update()
            match = self._store_and_search(record)
            await self._respond(record, match)
            self._transition(SessionState.CLOSED)
            outcome = Outcome.MATCH if match else Outcome.EMPTY
            return self._result(outcome, match=match)
        except _SessionFailed as exc:
            await self._fail(exc.reason)
            return self._result(Outcome.FAILED, reason=exc.reason)
        except ProtocolError as exc:
            await self._fail(f"bad payload: {exc}")
            return self._result(Outcome.FAILED, reason=str(exc))
        except asyncio.TimeoutError:
            await self._fail("read timed out")
            return self._result(Outcome.FAILED, reason="read timed out")
        except (ConnectionError, OSError) as exc:
            # socket is gone, nobody to send the sentinel to
            logger.info("Connection lost with %s: %s", self.identity, exc)
            self._failed_in = self.state
            self._transition(SessionState.FAILED)
            return self._result(Outcome.FAILED, reason=f"connection lost: {exc}")
        finally:
            await self._close()

    # ── Steps ──────────────────────────────────────────────────────

    async def _handshake(self) -> None:
        offer = LocationMessage.sentinel(self.identity)
        for attempt in range(1, self.handshake_attempts + 1):
            self._attempts = attempt
            await send_message(self.writer, offer)
            reply = await read_message(self.reader, timeout=self.read_timeout)
            if reply.identity == self.identity:
                self._transition(SessionState.HANDSHAKE_CONFIRMED)
                return
            logger.debug(
                "Handshake mismatch from %s (attempt %d/%d)",
                self.identity, attempt, self.handshake_attempts,
            )
        raise _SessionFailed("handshake failed")

    async def _receive_update(self) -> LocationRecord:
        self._transition(SessionState.AWAITING_UPDATE)
        update = await read_message(self.reader, timeout=self.read_timeout)
        identity = update.identity if update.identity is not None else self.identity
        return LocationRecord(identity, update.latitude, update.longitude)

    def _store_and_search(self, record: LocationRecord) -> LocationRecord | None:
        try:
            self.store.upsert(record.identity, record.latitude, record.longitude)
        except StoreError as exc:
            logger.error("Could not store location for %s: %s", record.identity, exc)
            raise _SessionFailed("store write failed") from exc
        try:
            return self.store.find_nearby(record.identity, record.latitude, record.longitude)
        except StoreError as exc:
            logger.error("Nearby search failed for %s: %s", record.identity, exc)
            raise _SessionFailed("store read failed") from exc

    async def _respond(self, record: LocationRecord, match: LocationRecord | None) -> None:
        self._transition(SessionState.RESPONDED)
        if match is None:
            await send_message(self.writer, LocationMessage.sentinel())
            return
        await send_message(
            self.writer,
            LocationMessage(
                identity=record.identity,
                latitude=match.latitude,
                longitude=match.longitude,
            ),
        )

    # ── Helpers ────────────────────────────────────────────────────

    async def _fail(self, reason: str) -> None:
        logger.warning("Session %s failed in %s: %s", self.identity, self.state.value, reason)
        self._failed_in = self.state
        self._transition(SessionState.FAILED)
        try:
            await send_message(self.writer, LocationMessage.sentinel())
        except (ConnectionError, OSError):
            logger.debug("Could not send sentinel to %s", self.identity)

    async def _close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def _transition(self, state: SessionState) -> None:
        logger.debug("Session %s: %s -> %s", self.identity, self.state.value, state.value)
        self.state = state

    def _result(
        self,
        outcome: Outcome,
        match: LocationRecord | None = None,
        reason: str = "",
    ) -> SessionResult:
        return SessionResult(
            identity=self.identity,
            state=self.state,
            outcome=outcome,
            match=match,
            reason=reason,
            handshake_attempts=self._attempts,
            failed_in=self._failed_in,
        )
