"""Tests for the connection registry and heartbeat."""

from __future__ import annotations

import asyncio
import time

import pytest

from relay.messages import create_message
from relay.registry import DEVICE, MISSED_BEATS, VIEWER, ConnectionRegistry


def _chat(content: str = "hi"):
    return create_message("chat", source="server", content=content, priority="low")


# ── Bookkeeping ───────────────────────────────────────────────────


class TestRegister:
    def test_register_returns_unique_ids(self, make_transport):
        reg = ConnectionRegistry()
        ids = {reg.register(make_transport()) for _ in range(200)}
        assert len(ids) == 200
        assert all(i.startswith("client_") for i in ids)

    def test_defaults_to_viewer(self, make_transport):
        reg = ConnectionRegistry()
        conn = reg.get(reg.register(make_transport()))
        assert conn.role == VIEWER
        assert conn.computer_name is None
        assert conn.registered_functions == []
        assert conn.last_ping is None

    def test_metadata_applied(self, make_transport):
        reg = ConnectionRegistry()
        conn_id = reg.register(make_transport(), DEVICE, {"computer_name": "T1", "user_agent": "cc"})
        conn = reg.get(conn_id)
        assert conn.role == DEVICE
        assert conn.computer_name == "T1"
        assert conn.metadata == {"user_agent": "cc"}

    def test_same_transport_registered_once(self, make_transport):
        reg = ConnectionRegistry()
        transport = make_transport()
        first = reg.register(transport)
        assert reg.register(transport) == first
        assert len(reg) == 1

    def test_unregister_idempotent(self, make_transport):
        reg = ConnectionRegistry()
        keep = reg.register(make_transport())
        gone = reg.register(make_transport())

        reg.unregister(gone)
        assert len(reg) == 1
        reg.unregister(gone)
        reg.unregister("client_never")
        assert len(reg) == 1
        assert keep in reg

    def test_list_by_role_insertion_order(self, make_transport):
        reg = ConnectionRegistry()
        a = reg.register(make_transport())
        d = reg.register(make_transport(), DEVICE)
        b = reg.register(make_transport())
        assert [c.id for c in reg.list_by_role(VIEWER)] == [a, b]
        assert [c.id for c in reg.list_by_role(DEVICE)] == [d]

    def test_update_merges_and_ignores_unknown_id(self, make_transport):
        reg = ConnectionRegistry()
        conn_id = reg.register(make_transport())
        reg.update(conn_id, role=DEVICE, computer_name="T1", computer_type="turtle")
        conn = reg.get(conn_id)
        assert (conn.role, conn.computer_name, conn.computer_type) == (DEVICE, "T1", "turtle")

        reg.update("client_missing", role=DEVICE)
        assert len(reg) == 1

    def test_update_cannot_replace_identity(self, make_transport):
        reg = ConnectionRegistry()
        transport = make_transport()
        conn_id = reg.register(transport)
        reg.update(conn_id, id="other", transport=None)
        conn = reg.get(conn_id)
        assert conn.id == conn_id
        assert conn.transport is transport


class TestFindDevice:
    def test_finds_device_only(self, make_transport):
        reg = ConnectionRegistry()
        viewer = reg.register(make_transport())
        reg.update(viewer, computer_name="T1")  # named but still a viewer
        device = reg.register(make_transport(), DEVICE, {"computer_name": "T1"})
        assert reg.find_device_by_name("T1").id == device
        assert reg.find_device_by_name("T2") is None

    def test_duplicate_names_first_match_wins(self, make_transport):
        reg = ConnectionRegistry()
        first = reg.register(make_transport(), DEVICE, {"computer_name": "Miner"})
        second = reg.register(make_transport(), DEVICE, {"computer_name": "Miner"})
        assert reg.find_device_by_name("Miner").id == first

        reg.unregister(first)
        assert reg.find_device_by_name("Miner").id == second


# ── Liveness ──────────────────────────────────────────────────────


class TestLiveness:
    def test_fresh_connection_alive(self, make_transport):
        reg = ConnectionRegistry(heartbeat_interval=30)
        assert reg.is_alive(reg.register(make_transport()))

    def test_unknown_not_alive(self):
        assert not ConnectionRegistry().is_alive("client_nope")

    def test_stale_after_three_missed_beats(self, make_transport):
        reg = ConnectionRegistry(heartbeat_interval=10)
        conn_id = reg.register(make_transport())
        conn = reg.get(conn_id)

        conn.last_ping = time.time() - 10 * MISSED_BEATS + 1
        assert reg.is_alive(conn_id)
        conn.last_ping = time.time() - 10 * MISSED_BEATS - 1
        assert not reg.is_alive(conn_id)

    def test_falls_back_to_connected_at(self, make_transport):
        reg = ConnectionRegistry(heartbeat_interval=10)
        conn_id = reg.register(make_transport())
        reg.get(conn_id).connected_at = time.time() - 31
        assert not reg.is_alive(conn_id)

    def test_touch_refreshes(self, make_transport):
        reg = ConnectionRegistry(heartbeat_interval=10)
        conn_id = reg.register(make_transport())
        reg.get(conn_id).connected_at = time.time() - 100
        reg.touch(conn_id)
        assert reg.is_alive(conn_id)
        reg.touch("client_nope")  # no error

    def test_stats(self, make_transport):
        reg = ConnectionRegistry(heartbeat_interval=10)
        reg.register(make_transport())
        stale = reg.register(make_transport())
        reg.register(make_transport(), DEVICE)
        reg.get(stale).last_ping = time.time() - 100
        assert reg.stats() == {"total": 3, "viewers": 2, "devices": 1, "alive": 2}

    def test_computer_list(self, make_transport):
        reg = ConnectionRegistry()
        reg.register(make_transport(), DEVICE, {"computer_name": "T1", "computer_type": "turtle"})
        reg.register(make_transport(), DEVICE)
        reg.register(make_transport())
        assert reg.computer_list() == [
            {"computerName": "T1", "computerType": "turtle", "functions": [], "isOnline": True},
            {"computerName": "Unknown", "computerType": "computer", "functions": [], "isOnline": True},
        ]


# ── Delivery ──────────────────────────────────────────────────────


class TestDelivery:
    @pytest.mark.asyncio
    async def test_send_to(self, make_transport):
        reg = ConnectionRegistry()
        transport = make_transport()
        conn_id = reg.register(transport)
        assert await reg.send_to(conn_id, _chat("hello")) is True
        assert transport.sent[0]["content"] == "hello"
        assert transport.sent[0]["type"] == "chat"

    @pytest.mark.asyncio
    async def test_send_plain_dict(self, make_transport):
        reg = ConnectionRegistry()
        transport = make_transport()
        conn_id = reg.register(transport)
        assert await reg.send_to(conn_id, {"type": "x"})
        assert transport.sent == [{"type": "x"}]

    @pytest.mark.asyncio
    async def test_send_to_unknown(self):
        assert await ConnectionRegistry().send_to("client_nope", _chat()) is False

    @pytest.mark.asyncio
    async def test_send_to_closed(self, make_transport):
        reg = ConnectionRegistry()
        transport = make_transport(open=False)
        conn_id = reg.register(transport)
        assert await reg.send_to(conn_id, _chat()) is False
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_send_failure_swallowed(self, make_transport):
        reg = ConnectionRegistry()
        conn_id = reg.register(make_transport(fail=True))
        assert await reg.send_to(conn_id, _chat()) is False

    @pytest.mark.asyncio
    async def test_serialization_failure_swallowed(self, make_transport):
        reg = ConnectionRegistry()
        conn_id = reg.register(make_transport())
        assert await reg.send_to(conn_id, {"bad": object()}) is False

    @pytest.mark.asyncio
    async def test_broadcast_counts_only_successes(self, make_transport):
        reg = ConnectionRegistry()
        good = [make_transport(), make_transport()]
        for t in good:
            reg.register(t)
        reg.register(make_transport(fail=True))
        reg.register(make_transport(open=False))
        device = make_transport()
        reg.register(device, DEVICE)

        assert await reg.broadcast(VIEWER, _chat()) == 2
        assert all(len(t.sent) == 1 for t in good)
        assert device.sent == []

    @pytest.mark.asyncio
    async def test_broadcast_survives_mid_broadcast_failure(self, make_transport):
        reg = ConnectionRegistry()
        first, broken, last = make_transport(), make_transport(fail=True), make_transport()
        for t in (first, broken, last):
            reg.register(t)
        assert await reg.broadcast(VIEWER, _chat()) == 2
        assert len(last.sent) == 1

    @pytest.mark.asyncio
    async def test_broadcast_all(self, make_transport):
        reg = ConnectionRegistry()
        reg.register(make_transport())
        reg.register(make_transport(), DEVICE)
        assert await reg.broadcast_all(_chat()) == 2


# ── Heartbeat ─────────────────────────────────────────────────────


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_tick_reaps_stale_even_if_open(self, make_transport):
        reg = ConnectionRegistry(heartbeat_interval=10)
        stale_transport = make_transport()
        stale = reg.register(stale_transport)
        fresh_transport = make_transport()
        fresh = reg.register(fresh_transport)
        reg.get(stale).last_ping = time.time() - 31

        assert reg.stats()["alive"] == 1
        await reg.tick()

        assert reg.get(stale) is None
        assert stale_transport.closed
        assert stale_transport.pings == 0
        assert fresh in reg
        assert fresh_transport.pings == 1

    @pytest.mark.asyncio
    async def test_tick_reaps_closed(self, make_transport):
        reg = ConnectionRegistry()
        closed = reg.register(make_transport(open=False))
        await reg.tick()
        assert closed not in reg

    @pytest.mark.asyncio
    async def test_tick_stamps_last_ping(self, make_transport):
        reg = ConnectionRegistry(heartbeat_interval=10)
        conn_id = reg.register(make_transport())
        before = time.time()
        await reg.tick()
        assert reg.get(conn_id).last_ping >= before

    @pytest.mark.asyncio
    async def test_cleanup_returns_reaped(self, make_transport):
        reg = ConnectionRegistry(heartbeat_interval=10)
        stale = reg.register(make_transport())
        reg.register(make_transport())
        reg.get(stale).last_ping = time.time() - 100
        assert [c.id for c in reg.cleanup()] == [stale]
        assert len(reg) == 1

    @pytest.mark.asyncio
    async def test_heartbeat_task_runs(self, make_transport):
        reg = ConnectionRegistry(heartbeat_interval=0.05)
        transport = make_transport()
        conn_id = reg.register(transport)
        reg.get(conn_id).last_ping = time.time() + 60
        reg.start()
        await asyncio.sleep(0.2)
        await reg.close()
        assert transport.pings >= 1

    @pytest.mark.asyncio
    async def test_close_closes_everything(self, make_transport):
        reg = ConnectionRegistry()
        transports = [make_transport(), make_transport()]
        for t in transports:
            reg.register(t)
        reg.start()
        await reg.close()
        assert all(t.closed for t in transports)
        assert len(reg) == 0

    @pytest.mark.asyncio
    async def test_close_swallows_close_errors(self, make_transport):
        class Exploding(make_transport):
            async def close(self):
                raise RuntimeError("already gone")

        reg = ConnectionRegistry()
        reg.register(Exploding())
        ok = make_transport()
        reg.register(ok)
        await reg.close()
        assert ok.closed
        assert len(reg) == 0
