"""Session identities.

An identity is ``"<connection time> | <peer address>"``, e.g.
``"Sun Oct 18 14:02:11 UTC 2026 | 127.0.0.1"``. The timestamp only has
one-second resolution, so two connections from the same peer inside the same
second produce the same string from :func:`issue_identity`.
:class:`IdentityIssuer` detects that case and appends a sequence number.
"""

from __future__ import annotations

import ipaddress
import itertools
import time

_TIME_FORMAT = "%a %b %d %H:%M:%S %Z %Y"
_SEPARATOR = " | "


def format_address(host: str) -> str:
    """Dot-join the raw address octets of *host*.

    ``"::1"`` becomes sixteen dot-joined octets. Hosts that are not IP
    literals (unix socket paths, names) are returned unchanged.
    """
    try:
        packed = ipaddress.ip_address(host.split("%", 1)[0]).packed
    except ValueError:
        return host
    return ".".join(str(b) for b in packed)


def issue_identity(host: str, now: float | None = None) -> str:
    """Build the identity for a connection from *host* accepted at *now*."""
    stamp = time.strftime(_TIME_FORMAT, time.gmtime(time.time() if now is None else now))
    return f"{stamp}{_SEPARATOR}{format_address(host)}"


class IdentityIssuer:
    """Hands out identities, never repeating one within this process."""

    def __init__(self) -> None:
        self._tick: str | None = None
        self._issued: set[str] = set()
        self._seq = itertools.count(1)

    def issue(self, host: str, now: float | None = None) -> str:
        identity = issue_identity(host, now)
        tick = identity.split(_SEPARATOR, 1)[0]
        if tick != self._tick:
            self._tick = tick
            self._issued.clear()
        if identity in self._issued:
            # same peer, same tick
            return f"{identity}{_SEPARATOR}{next(self._seq)}"
        self._issued.add(identity)
        return identity
