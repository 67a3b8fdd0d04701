"""Connection registry and liveness supervisor.

The registry is the single owner of every live connection.  It hands out
connection ids, tracks each connection's role (``viewer`` until a device
registers, then ``device``) and identity, and offers targeted and
role-wide delivery.  A background heartbeat reaps connections that have
missed three beats and probes the rest.

All bookkeeping methods are synchronous so they can never interleave with
one another on the event loop; only delivery awaits the transport.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from relay.messages import BaseEnvelope, now_ms

logger = logging.getLogger(__name__)

VIEWER = "viewer"
DEVICE = "device"
Role = Literal["viewer", "device"]

MISSED_BEATS = 3


class Transport(Protocol):
    """What the registry needs from an underlying connection."""

    @property
    def is_open(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


@dataclass
class Connection:
    """A tracked connection.  Owned and mutated only by the registry."""

    id: str
    transport: Transport
    role: Role = VIEWER
    computer_name: str | None = None
    computer_type: str | None = None
    registered_functions: list = field(default_factory=list)
    connected_at: float = field(default_factory=time.time)
    last_ping: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def label(self) -> str:
        return f"{self.id} ({self.computer_name})" if self.computer_name else self.id


def _encode(message: BaseEnvelope | dict) -> str:
    if isinstance(message, BaseEnvelope):
        message = message.to_wire()
    return json.dumps(message)


class ConnectionRegistry:
    """Tracks live connections, delivers messages, and supervises liveness.

    Parameters
    ----------
    heartbeat_interval:
        Seconds between heartbeat ticks.  A connection is considered dead
        once ``MISSED_BEATS`` intervals pass without a ping or pong.
    """

    def __init__(self, heartbeat_interval: float = 30.0) -> None:
        self.heartbeat_interval = heartbeat_interval
        self._connections: dict[str, Connection] = {}
        self._task: asyncio.Task | None = None

    # ── Bookkeeping ────────────────────────────────────────────────

    def register(
        self,
        transport: Transport,
        role: Role = VIEWER,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Track *transport* and return its new connection id."""
        for conn in self._connections.values():
            if conn.transport is transport:
                return conn.id

        conn_id = self._new_id()
        conn = Connection(id=conn_id, transport=transport, role=role)
        if metadata:
            self._apply(conn, metadata)
        self._connections[conn_id] = conn

        logger.info("%s connected: %s (total %d)", role, conn.label(), len(self._connections))
        return conn_id

    def unregister(self, conn_id: str) -> None:
        conn = self._connections.pop(conn_id, None)
        if conn is not None:
            logger.info(
                "%s disconnected: %s (total %d)",
                conn.role, conn.label(), len(self._connections),
            )

    def get(self, conn_id: str) -> Connection | None:
        return self._connections.get(conn_id)

    def list_by_role(self, role: Role) -> list[Connection]:
        return [c for c in self._connections.values() if c.role == role]

    def find_device_by_name(self, name: str) -> Connection | None:
        """Return the earliest-registered device called *name*.

        Names are not unique; a later device with the same name is
        shadowed until the first one goes away.
        """
        for conn in self._connections.values():
            if conn.role == DEVICE and conn.computer_name == name:
                return conn
        return None

    def update(self, conn_id: str, **fields: Any) -> None:
        """Merge *fields* into the connection record (no-op if unknown)."""
        conn = self._connections.get(conn_id)
        if conn is None:
            return
        self._apply(conn, fields)
        logger.debug("Updated connection %s: %s", conn_id, sorted(fields))

    def touch(self, conn_id: str) -> None:
        """Record a pong from *conn_id*."""
        conn = self._connections.get(conn_id)
        if conn is not None:
            conn.last_ping = time.time()

    def is_alive(self, conn_id: str) -> bool:
        conn = self._connections.get(conn_id)
        if conn is None:
            return False
        last = conn.last_ping if conn.last_ping is not None else conn.connected_at
        return time.time() - last < self.heartbeat_interval * MISSED_BEATS

    def stats(self) -> dict[str, int]:
        conns = list(self._connections.values())
        return {
            "total": len(conns),
            "viewers": sum(1 for c in conns if c.role == VIEWER),
            "devices": sum(1 for c in conns if c.role == DEVICE),
            "alive": sum(1 for c in conns if self.is_alive(c.id)),
        }

    def computer_list(self) -> list[dict[str, Any]]:
        """Device connections with their advertised functions and liveness."""
        return [
            {
                "computerName": conn.computer_name or "Unknown",
                "computerType": conn.computer_type or "computer",
                "functions": list(conn.registered_functions),
                "isOnline": self.is_alive(conn.id),
            }
            for conn in self.list_by_role(DEVICE)
        ]

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn_id: object) -> bool:
        return conn_id in self._connections

    # ── Delivery ───────────────────────────────────────────────────

    async def send_to(self, conn_id: str, message: BaseEnvelope | dict) -> bool:
        """Deliver *message* to one connection.  Never raises."""
        conn = self._connections.get(conn_id)
        if conn is None or not conn.transport.is_open:
            return False
        try:
            await conn.transport.send_text(_encode(message))
            return True
        except Exception as exc:
            logger.warning("Failed to send to %s: %s", conn_id, exc)
            return False

    async def broadcast(self, role: Role, message: BaseEnvelope | dict) -> int:
        """Deliver to every connection with *role*; return the success count."""
        sent = 0
        for conn in self.list_by_role(role):
            if await self.send_to(conn.id, message):
                sent += 1
        return sent

    async def broadcast_all(self, message: BaseEnvelope | dict) -> int:
        return await self.broadcast(VIEWER, message) + await self.broadcast(DEVICE, message)

    # ── Liveness ───────────────────────────────────────────────────

    def cleanup(self) -> list[Connection]:
        """Drop every dead or closed connection and return the dropped records."""
        dead = [
            conn for conn in self._connections.values()
            if not self.is_alive(conn.id) or not conn.transport.is_open
        ]
        for conn in dead:
            self.unregister(conn.id)
        if dead:
            logger.info("Cleaned up %d dead connections", len(dead))
        return dead

    async def tick(self) -> None:
        """One heartbeat: reap first, then probe every open connection."""
        for conn in self.cleanup():
            if conn.transport.is_open:
                await self._close_quietly(conn)

        for conn in list(self._connections.values()):
            if not conn.transport.is_open:
                continue
            try:
                await conn.transport.ping()
                conn.last_ping = time.time()
            except Exception as exc:
                logger.warning("Failed to ping %s: %s", conn.id, exc)

    def start(self) -> None:
        """Start the heartbeat task on the running event loop."""
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._heartbeat_loop())
        logger.info("Heartbeat started (every %ss)", self.heartbeat_interval)

    async def close(self) -> None:
        """Stop the heartbeat, close every transport and forget all records."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for conn in list(self._connections.values()):
            await self._close_quietly(conn)
        self._connections.clear()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Heartbeat tick failed")

    # ── Helpers ────────────────────────────────────────────────────

    def _new_id(self) -> str:
        while True:
            conn_id = f"client_{now_ms()}_{uuid.uuid4().hex[:6]}"
            if conn_id not in self._connections:
                return conn_id

    @staticmethod
    def _apply(conn: Connection, fields: dict[str, Any]) -> None:
        for key, value in fields.items():
            if key in ("id", "transport", "metadata"):
                continue
            if hasattr(conn, key):
                setattr(conn, key, value)
            else:
                conn.metadata[key] = value

    @staticmethod
    async def _close_quietly(conn: Connection) -> None:
        try:
            await conn.transport.close()
        except Exception as exc:
            logger.debug("Error closing %s: %s", conn.id, exc)
