"""Location store for the pool2go relay.

Keeps the last reported position of every session in a single SQLite table
and answers "is anyone else near this point?" queries against it.

Usage::

    from pool2go.db import open_store
    store = open_store("./data/pool2go.sqlite")   # creates the table if absent
    store.upsert(identity, 5.001, 5.001)
    match = store.find_nearby(other_identity, 5.003, 5.003)
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# 0.005 decimal degrees is roughly 200 m at the equator
DEFAULT_TOLERANCE = 0.005

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS locations (
    identity   TEXT PRIMARY KEY,
    latitude   REAL NOT NULL,
    longitude  REAL NOT NULL
);
"""


class StoreError(Exception):
    """Raised when the location table cannot be read or written."""


@dataclass(frozen=True)
class LocationRecord:
    """The last known position of one session."""

    identity: str
    latitude: float
    longitude: float


class LocationStore:
    """Upsert and bounding-box lookup over the ``locations`` table.

    Args:
        conn: An open :class:`sqlite3.Connection`.
        tolerance: Half-width of the lookup box, in decimal degrees. Applied
            to latitude and longitude alike (no correction for longitude
            compression away from the equator).
    """

    def __init__(self, conn: sqlite3.Connection, tolerance: float = DEFAULT_TOLERANCE) -> None:
        self._conn = conn
        self.tolerance = tolerance
        self._create_schema()

    def _create_schema(self) -> None:
        try:
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(f"Could not create locations table: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Writes                                                               #
    # ------------------------------------------------------------------ #

    def upsert(self, identity: str, latitude: float, longitude: float) -> None:
        """Insert a row for *identity*, or overwrite its coordinates.

        A single statement, so concurrent writers for different identities
        cannot corrupt each other's rows. Same-identity writers are
        last-write-wins.
        """
        if identity is None:
            raise StoreError("Cannot store a location without an identity")
        try:
            self._conn.execute(
                """
                INSERT INTO locations (identity, latitude, longitude)
                VALUES (?, ?, ?)
                ON CONFLICT(identity) DO UPDATE SET
                    latitude  = excluded.latitude,
                    longitude = excluded.longitude
                """,
                (identity, latitude, longitude),
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            self._rollback()
            raise StoreError(f"Could not store location for {identity!r}: {exc}") from exc
        logger.debug("upsert identity=%s lat=%f lng=%f", identity, latitude, longitude)

    # ------------------------------------------------------------------ #
    # Reads                                                                #
    # ------------------------------------------------------------------ #

    def find_nearby(self, identity: str, latitude: float, longitude: float) -> LocationRecord | None:
        """Return a row of another identity inside the tolerance box, if any.

        Both axes must differ by strictly less than :attr:`tolerance`. The
        first qualifying row in table order is returned; it is *a* match,
        not necessarily the closest one.
        """
        try:
            row = self._conn.execute(
                """
                SELECT identity, latitude, longitude FROM locations
                 WHERE identity <> ?
                   AND ABS(latitude - ?) < ?
                   AND ABS(longitude - ?) < ?
                 ORDER BY rowid
                 LIMIT 1
                """,
                (identity, latitude, self.tolerance, longitude, self.tolerance),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Could not search nearby locations: {exc}") from exc
        if row is None:
            return None
        return LocationRecord(row[0], row[1], row[2])

    def get(self, identity: str) -> LocationRecord | None:
        """Return the stored row for *identity*."""
        try:
            row = self._conn.execute(
                "SELECT identity, latitude, longitude FROM locations WHERE identity = ?",
                (identity,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Could not read location for {identity!r}: {exc}") from exc
        return LocationRecord(row[0], row[1], row[2]) if row else None

    def count(self) -> int:
        try:
            return self._conn.execute("SELECT COUNT(*) FROM locations").fetchone()[0]
        except sqlite3.Error as exc:
            raise StoreError(f"Could not count locations: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error:
            logger.exception("Could not close connection to location store")

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error:
            logger.debug("Rollback failed", exc_info=True)


def open_store(path: str | Path, tolerance: float = DEFAULT_TOLERANCE) -> LocationStore:
    """Open (creating if needed) the SQLite file at *path*.

    Raises:
        StoreError: the file or its directory cannot be created, or the
            schema cannot be applied.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
    except (OSError, sqlite3.Error) as exc:
        logger.error("Could not open location store at %s", path)
        raise StoreError(f"Could not open database {path}: {exc}") from exc
    logger.info("Registered location store at %s", path)
    try:
        return LocationStore(conn, tolerance=tolerance)
    except StoreError:
        conn.close()
        raise
