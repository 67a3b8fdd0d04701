"""Relay configuration, read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8080",
]


def _env_number(name: str, default: float, cast=float):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r, using %s", name, raw, default)
        return default
    return value


@dataclass
class RelayConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    heartbeat_interval: float = 30.0  # seconds; 3 missed beats = dead
    cors_origins: list[str] = field(default_factory=lambda: list(_DEFAULT_CORS_ORIGINS))
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> RelayConfig:
        origins = os.environ.get("RELAY_CORS_ORIGINS")
        return cls(
            host=os.environ.get("RELAY_HOST", "0.0.0.0"),
            port=_env_number("RELAY_PORT", 8080, int),
            heartbeat_interval=_env_number("RELAY_HEARTBEAT_INTERVAL", 30.0),
            cors_origins=(
                [o.strip() for o in origins.split(",") if o.strip()]
                if origins
                else list(_DEFAULT_CORS_ORIGINS)
            ),
            log_level=os.environ.get("RELAY_LOG_LEVEL", "INFO").upper(),
        )
