"""Wire format for the pool2go relay.

Every message is one :class:`LocationMessage` serialized as a JSON object on
a single line::

    {"identity": "Sun Oct 18 14:02:11 UTC 2026 | 127.0.0.1", "latitude": 360.0, "longitude": 360.0}

``identity`` may be ``null``. The pair ``(360, 360)`` is not a real position:
the server sends it either as an identity carrier during the handshake or, with
a null identity, as the "no result" sentinel.
"""

from __future__ import annotations

import asyncio
import json

from pydantic import BaseModel, ConfigDict, ValidationError

OUT_OF_BOUNDS_LATITUDE = 360.0
OUT_OF_BOUNDS_LONGITUDE = 360.0

MAX_LINE_BYTES = 64 * 1024


class ProtocolError(Exception):
    """Raised on malformed frames or a connection closed mid-exchange."""


class LocationMessage(BaseModel):
    # no coercion: "5.0" or true as a coordinate is a malformed frame
    model_config = ConfigDict(strict=True)

    identity: str | None = None
    latitude: float
    longitude: float

    @classmethod
    def sentinel(cls, identity: str | None = None) -> LocationMessage:
        """The out-of-bounds location, optionally carrying *identity*."""
        return cls(
            identity=identity,
            latitude=OUT_OF_BOUNDS_LATITUDE,
            longitude=OUT_OF_BOUNDS_LONGITUDE,
        )

    @property
    def is_sentinel(self) -> bool:
        return (
            self.latitude == OUT_OF_BOUNDS_LATITUDE
            and self.longitude == OUT_OF_BOUNDS_LONGITUDE
        )


def encode(message: LocationMessage) -> bytes:
    return message.model_dump_json().encode("utf-8") + b"\n"


def decode(line: bytes) -> LocationMessage:
    """Parse one frame. Raises :class:`ProtocolError` on any bad input."""
    try:
        data = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"Malformed frame: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(data).__name__}")
    try:
        return LocationMessage.model_validate(data)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid location message: {exc.error_count()} error(s)") from exc


async def send_message(writer: asyncio.StreamWriter, message: LocationMessage) -> None:
    writer.write(encode(message))
    await writer.drain()


async def read_message(
    reader: asyncio.StreamReader, timeout: float | None = None
) -> LocationMessage:
    """Read and decode the next frame.

    Raises:
        ProtocolError: closed connection, oversized or malformed frame.
        asyncio.TimeoutError: nothing arrived within *timeout* seconds.
    """
    try:
        line = await asyncio.wait_for(reader.readline(), timeout=timeout)
    except (asyncio.LimitOverrunError, ValueError) as exc:
        raise ProtocolError(f"Frame too long: {exc}") from exc
    if not line:
        raise ProtocolError("Connection closed")
    if len(line) > MAX_LINE_BYTES:
        raise ProtocolError(f"Frame too long: {len(line)} bytes")
    return decode(line.strip())
