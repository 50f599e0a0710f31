"""pytest configuration for pool2go tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from pool2go.config import RelayConfig
from pool2go.db import open_store
from pool2go.server import RelayServer


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture
def store(tmp_path):
    """A fresh location store backed by a temp SQLite file."""
    s = open_store(tmp_path / "pool2go_test.sqlite")
    yield s
    s.close()


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig(host="127.0.0.1", port=0, read_timeout=5.0, shutdown_grace=0.5)


@pytest_asyncio.fixture
async def relay(tmp_path, relay_config):
    """A relay listening on an ephemeral loopback port."""
    server = RelayServer(relay_config)
    await server.start(storage_path=tmp_path / "relay.sqlite")
    yield server
    await server.stop()
