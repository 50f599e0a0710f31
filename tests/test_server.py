"""End-to-end tests: real loopback sockets against a running RelayServer."""

from __future__ import annotations

import asyncio
import socket

import pytest

from pool2go.client import RelayClient, RelayClientError, lookup
from pool2go.config import RelayConfig
from pool2go.protocol import LocationMessage, ProtocolError, read_message, send_message
from pool2go.server import RelayServer, RelayStartupError


async def _open(relay: RelayServer):
    return await asyncio.open_connection("127.0.0.1", relay.port)


async def _wait_for_sessions(relay: RelayServer) -> None:
    for _ in range(100):
        if relay.active_sessions == 0:
            return
        await asyncio.sleep(0.01)


# ── Scenarios ─────────────────────────────────────────────────────


class TestScenarios:
    @pytest.mark.asyncio
    async def test_handshake_identity_contains_peer_address(self, relay):
        async with RelayClient("127.0.0.1", relay.port) as client:
            assert "127.0.0.1" in client.identity

    @pytest.mark.asyncio
    async def test_lone_client_gets_sentinel(self, relay):
        assert await lookup("127.0.0.1", relay.port, 5.001, 5.001) is None
        assert relay.store.count() == 1

    @pytest.mark.asyncio
    async def test_second_client_sees_first(self, relay):
        assert await lookup("127.0.0.1", relay.port, 5.001, 5.001) is None

        async with RelayClient("127.0.0.1", relay.port) as client:
            reply = await client.report(5.003, 5.003)

        assert reply is not None
        assert reply.latitude == 5.001
        assert reply.longitude == 5.001
        assert reply.identity == client.identity

    @pytest.mark.asyncio
    async def test_out_of_range_clients_do_not_match(self, relay):
        assert await lookup("127.0.0.1", relay.port, 5.0, 5.0) is None
        assert await lookup("127.0.0.1", relay.port, 5.0051, 5.0) is None

    @pytest.mark.asyncio
    async def test_stats(self, relay):
        await lookup("127.0.0.1", relay.port, 1.0, 1.0)
        await lookup("127.0.0.1", relay.port, 1.001, 1.001)
        await _wait_for_sessions(relay)

        assert relay.stats.accepted == 2
        assert relay.stats.completed == 2
        assert relay.stats.empty == 1
        assert relay.stats.matches == 1


# ── Failure handling ──────────────────────────────────────────────


class TestSessionFailures:
    @pytest.mark.asyncio
    async def test_handshake_exhaustion(self, relay):
        reader, writer = await _open(relay)
        for _ in range(6):
            offer = await read_message(reader, timeout=2)
            assert offer.identity is not None
            await send_message(writer, LocationMessage(identity="imposter", latitude=0, longitude=0))

        final = await read_message(reader, timeout=2)
        assert final.identity is None
        assert final.is_sentinel
        with pytest.raises(ProtocolError):
            await read_message(reader, timeout=2)  # server closed the socket
        writer.close()

        await _wait_for_sessions(relay)
        assert relay.store.count() == 0
        assert relay.stats.handshake_failures == 1

    @pytest.mark.asyncio
    async def test_garbage_update_then_server_keeps_serving(self, relay):
        reader, writer = await _open(relay)
        offer = await read_message(reader, timeout=2)
        await send_message(writer, offer)
        writer.write(b"{this is not json\n")
        await writer.drain()

        reply = await read_message(reader, timeout=2)
        assert reply.is_sentinel
        writer.close()
        await _wait_for_sessions(relay)
        assert relay.store.count() == 0

        # listener is still accepting
        assert await lookup("127.0.0.1", relay.port, 2.0, 2.0) is None
        assert relay.store.count() == 1

    @pytest.mark.asyncio
    async def test_string_coordinates_rejected(self, relay):
        reader, writer = await _open(relay)
        offer = await read_message(reader, timeout=2)
        await send_message(writer, offer)
        writer.write(b'{"identity": null, "latitude": "5.001", "longitude": "5.001"}\n')
        await writer.drain()

        reply = await read_message(reader, timeout=2)
        assert reply.is_sentinel
        assert reply.identity is None
        writer.close()
        await _wait_for_sessions(relay)
        assert relay.store.count() == 0

    @pytest.mark.asyncio
    async def test_client_hangs_up_mid_session(self, relay):
        reader, writer = await _open(relay)
        await read_message(reader, timeout=2)
        writer.close()
        await writer.wait_closed()
        await _wait_for_sessions(relay)

        assert relay.stats.failed == 1
        assert relay.running


# ── Lifecycle ─────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_releases_socket_and_store(self, tmp_path, relay_config):
        server = RelayServer(relay_config)
        await server.start(storage_path=tmp_path / "stop.sqlite")
        port = server.port
        assert server.running

        await server.stop()
        assert not server.running
        assert server.port is None
        assert server.store is None
        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", port)

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, relay):
        await relay.stop()
        await relay.stop()

    @pytest.mark.asyncio
    async def test_serve_forever_returns_after_stop(self, relay):
        serving = asyncio.create_task(relay.serve_forever())
        await asyncio.sleep(0.05)
        assert not serving.done()
        await relay.stop()
        await asyncio.wait_for(serving, timeout=2)

    @pytest.mark.asyncio
    async def test_stalled_session_cancelled_on_stop(self, tmp_path):
        config = RelayConfig(host="127.0.0.1", port=0, read_timeout=None, shutdown_grace=0.1)
        server = RelayServer(config)
        await server.start(storage_path=tmp_path / "stall.sqlite")

        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        await read_message(reader, timeout=2)  # offer, then say nothing
        assert server.active_sessions == 1

        await asyncio.wait_for(server.stop(), timeout=5)
        assert server.active_sessions == 0
        assert await reader.read() == b""
        writer.close()

    @pytest.mark.asyncio
    async def test_accept_failure_stops_relay(self, tmp_path, relay_config, monkeypatch):
        async def _broken_accept(sock):
            raise OSError("too many open files")

        monkeypatch.setattr(asyncio.get_running_loop(), "sock_accept", _broken_accept)
        server = RelayServer(relay_config)
        await server.start(storage_path=tmp_path / "accept.sqlite")

        with pytest.raises(OSError, match="too many open files"):
            await asyncio.wait_for(server.serve_forever(), timeout=2)
        assert server._stop_task is not None
        assert server._stop_task.done()
        assert not server.running
        assert server.port is None
        assert server.store is None

    @pytest.mark.asyncio
    async def test_port_in_use(self, tmp_path, relay):
        config = RelayConfig(host="127.0.0.1")
        other = RelayServer(config)
        with pytest.raises(RelayStartupError):
            await other.start(port=relay.port, storage_path=tmp_path / "other.sqlite")
        assert other.store is None

    @pytest.mark.asyncio
    async def test_bad_storage_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        server = RelayServer(RelayConfig(host="127.0.0.1", port=0))
        with pytest.raises(RelayStartupError):
            await server.start(storage_path=blocker / "db.sqlite")
        assert server.port is None

    @pytest.mark.asyncio
    async def test_start_twice(self, relay):
        with pytest.raises(RuntimeError):
            await relay.start()

    @pytest.mark.asyncio
    async def test_serve_forever_requires_start(self):
        with pytest.raises(RuntimeError):
            await RelayServer().serve_forever()


# ── Client ────────────────────────────────────────────────────────


class TestClient:
    @pytest.mark.asyncio
    async def test_connect_refused(self):
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
        with pytest.raises(RelayClientError, match="Cannot connect"):
            await RelayClient("127.0.0.1", port, timeout=2).connect()

    @pytest.mark.asyncio
    async def test_relay_refuses_session(self):
        async def _refuse(reader, writer):
            await send_message(writer, LocationMessage.sentinel())
            writer.close()

        fake = await asyncio.start_server(_refuse, "127.0.0.1", 0)
        port = fake.sockets[0].getsockname()[1]
        try:
            with pytest.raises(RelayClientError, match="refused"):
                await RelayClient("127.0.0.1", port, timeout=2).connect()
        finally:
            fake.close()
            await fake.wait_closed()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offer", [b"not json\n", b""])
    async def test_bad_offer_closes_socket(self, offer):
        async def _garbage(reader, writer):
            writer.write(offer)
            await writer.drain()
            writer.close()

        fake = await asyncio.start_server(_garbage, "127.0.0.1", 0)
        port = fake.sockets[0].getsockname()[1]
        client = RelayClient("127.0.0.1", port, timeout=2)
        try:
            with pytest.raises(RelayClientError, match="Bad reply"):
                await client.connect()
            assert client._writer is None
            assert client._reader is None
        finally:
            fake.close()
            await fake.wait_closed()

    @pytest.mark.asyncio
    async def test_refused_session_closes_socket(self):
        async def _refuse(reader, writer):
            await send_message(writer, LocationMessage.sentinel())
            writer.close()

        fake = await asyncio.start_server(_refuse, "127.0.0.1", 0)
        port = fake.sockets[0].getsockname()[1]
        client = RelayClient("127.0.0.1", port, timeout=2)
        try:
            with pytest.raises(RelayClientError):
                await client.connect()
            assert client._writer is None
        finally:
            fake.close()
            await fake.wait_closed()

    @pytest.mark.asyncio
    async def test_report_before_connect(self):
        with pytest.raises(RelayClientError, match="Not connected"):
            await RelayClient("127.0.0.1", 1).report(1.0, 1.0)
