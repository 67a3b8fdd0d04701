"""WebSocket endpoint for dashboards and socket-capable devices.

Every connection starts as a viewer.  Frames are JSON envelopes, one per
message, handed to the router in arrival order.  Two frames bypass the
router:

  Server → Client:  {"type": "ping", "timestamp": <ms>}   (heartbeat probe)
  Client → Server:  {"type": "pong"}                      (refreshes liveness)

Mount it in FastAPI via::

    app.add_api_websocket_route("/ws", relay_ws_handler)
"""

from __future__ import annotations

import json
import logging

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from relay.messages import SERVER_SOURCE, create_message, now_ms
from relay.registry import VIEWER

logger = logging.getLogger(__name__)


class WebSocketTransport:
    """Adapts a Starlette :class:`WebSocket` to the registry's transport interface."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)

    async def ping(self) -> None:
        # ASGI has no protocol-level ping, so probe at the application layer.
        await self.websocket.send_text(json.dumps({"type": "ping", "timestamp": now_ms()}))

    async def close(self) -> None:
        await self.websocket.close()


async def relay_ws_handler(websocket: WebSocket) -> None:
    """Serve one WebSocket connection until it closes."""
    registry = websocket.app.state.registry
    router = websocket.app.state.router

    await websocket.accept()
    client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
    conn_id = registry.register(
        WebSocketTransport(websocket),
        VIEWER,
        {"user_agent": websocket.headers.get("user-agent"), "remote": client},
    )

    try:
        await registry.send_to(conn_id, create_message(
            "chat",
            source=SERVER_SOURCE,
            content=f"Connected to ComputerCraft server! Client ID: {conn_id}",
            priority="low",
            category="system",
        ))

        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            text = frame.get("text")
            if text is None and frame.get("bytes") is not None:
                text = frame["bytes"].decode("utf-8", errors="replace")
            if text is None:
                continue
            await _handle_frame(registry, router, conn_id, text)

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected: %s", conn_id)
    except Exception:
        logger.exception("WebSocket error for %s", conn_id)
    finally:
        registry.unregister(conn_id)


async def _handle_frame(registry, router, conn_id: str, text: str) -> None:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("Dropping non-JSON frame from %s: %s", conn_id, exc)
        return

    if isinstance(data, dict) and data.get("type") == "pong":
        registry.touch(conn_id)
        return

    await router.route(data, conn_id)
