"""Craft Relay — dashboard ↔ device message hub.

Exposes:
  WS   /ws                              — realtime channel (dashboards, devices)
  GET  /health                          — liveness check with connection stats
  GET  /api/computers                   — connected devices and their functions
  POST /api/computercraft/register      — HTTP device registration
  POST /api/computercraft/message       — HTTP envelope ingestion
  POST /api/computercraft/command       — send a command to a device

Start with::

    python -m relay.server
    # or
    uvicorn relay.server:app --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from relay import device_api
from relay.config import RelayConfig
from relay.registry import ConnectionRegistry
from relay.router import MessageRouter
from relay.websocket import relay_ws_handler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    registry: ConnectionRegistry = app.state.registry
    registry.start()
    logger.info("Craft Relay ready")
    try:
        yield
    finally:
        logger.info("Shutting down")
        await app.state.router.announce("Server shutting down", "high")
        await registry.close()


def create_app(config: RelayConfig | None = None) -> FastAPI:
    """Build the FastAPI app with its own registry and router."""
    config = config or RelayConfig.from_env()

    app = FastAPI(title="Craft Relay", version="1.0.0", lifespan=_lifespan)
    app.state.config = config
    app.state.registry = ConnectionRegistry(heartbeat_interval=config.heartbeat_interval)
    app.state.router = MessageRouter(app.state.registry)
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )

    app.include_router(device_api.router)
    app.add_api_websocket_route("/ws", relay_ws_handler)
    app.add_api_route("/health", health, methods=["GET"])
    return app


async def health(request: Request):
    state = request.app.state
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": time.monotonic() - state.started_at,
        "stats": state.registry.stats(),
    }


app = create_app()


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    config = RelayConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting Craft Relay on %s:%d", config.host, config.port)
    logger.info("WebSocket: ws://%s:%d/ws", config.host, config.port)
    uvicorn.run("relay.server:app", host=config.host, port=config.port, reload=False)


if __name__ == "__main__":
    main()
