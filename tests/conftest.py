"""pytest configuration for Craft Relay tests."""

import json

import pytest


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture(autouse=True)
def _no_env_config(monkeypatch):
    """Keep RELAY_* variables from the developer's shell out of every test."""
    for name in (
        "RELAY_HOST",
        "RELAY_PORT",
        "RELAY_HEARTBEAT_INTERVAL",
        "RELAY_CORS_ORIGINS",
        "RELAY_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


class FakeTransport:
    """In-memory transport that records what it was sent."""

    def __init__(self, open: bool = True, fail: bool = False):
        self.open = open
        self.fail = fail
        self.sent: list[dict] = []
        self.pings = 0
        self.closed = False

    @property
    def is_open(self) -> bool:
        return self.open and not self.closed

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("connection reset")
        self.sent.append(json.loads(data))

    async def ping(self) -> None:
        self.pings += 1

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_transport():
    """Factory for :class:`FakeTransport` instances."""
    return FakeTransport
