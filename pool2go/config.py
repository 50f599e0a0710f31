"""Configuration for the pool2go relay server."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

from pool2go.db import DEFAULT_TOLERANCE
from pool2go.session import DEFAULT_HANDSHAKE_ATTEMPTS

logger = logging.getLogger(__name__)

DEFAULT_DB_FILENAME = "pool2go.sqlite"


@dataclass
class RelayConfig:
    """Relay server configuration, loaded from config.json and/or env."""

    host: str = "0.0.0.0"
    port: int = 8082
    db_path: str = f"./data/{DEFAULT_DB_FILENAME}"

    # Protocol
    tolerance: float = DEFAULT_TOLERANCE  # decimal degrees, ~200 m
    handshake_attempts: int = DEFAULT_HANDSHAKE_ATTEMPTS
    read_timeout: float | None = 30.0  # None waits forever
    shutdown_grace: float = 5.0

    # Logging
    log_file: str = ""
    log_level: str = "INFO"

    # Admin API (None disables it)
    admin_port: int | None = None

    @classmethod
    def load(cls, path: str | Path) -> RelayConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    def apply_env(self, environ: dict[str, str] | None = None) -> RelayConfig:
        """Override fields from ``POOL2GO_*`` environment variables."""
        env = os.environ if environ is None else environ
        if "POOL2GO_HOST" in env:
            self.host = env["POOL2GO_HOST"]
        if "POOL2GO_PORT" in env:
            self.port = int(env["POOL2GO_PORT"])
        if "POOL2GO_DB_PATH" in env:
            self.db_path = env["POOL2GO_DB_PATH"]
        if "POOL2GO_READ_TIMEOUT" in env:
            raw = env["POOL2GO_READ_TIMEOUT"].strip().lower()
            self.read_timeout = None if raw in ("", "none", "0") else float(raw)
        if "POOL2GO_LOG_LEVEL" in env:
            self.log_level = env["POOL2GO_LOG_LEVEL"].upper()
        return self

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> RelayConfig:
        return cls().apply_env(environ)


def resolve_db_path(path: str | Path | None, filename: str | None = None) -> Path:
    """Join a database directory and file name.

    Relative directories are resolved against the current working directory.
    """
    directory = Path(path) if path else Path.cwd()
    if not directory.is_absolute():
        directory = Path.cwd() / directory
    return directory / (filename or DEFAULT_DB_FILENAME)
