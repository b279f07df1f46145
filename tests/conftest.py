"""Shared fixtures for the Realtime Relay Gateway test suite."""

import asyncio
import os

import pytest

# Required setting; must exist before anything instantiates Settings
os.environ.setdefault("AZURE_RESOURCE_NAME", "test-resource")

from src.config.settings import get_settings
from src.proxy.channels import Channel, ChannelClosed
from src.proxy.models import AuthMethod, ConnectionContext, Mode


class FakeChannel(Channel):
    """In-memory channel: frames fed into `inbox` are what the session receives."""

    def __init__(self, name: str = "fake"):
        self.name = name
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list = []
        self.close_calls: list[tuple[int, str]] = []
        self.fail_sends = False

    async def receive(self):
        item = await self.inbox.get()
        if isinstance(item, ChannelClosed):
            raise item
        return item

    async def send(self, frame) -> None:
        if self.fail_sends or self.close_calls:
            raise ChannelClosed(1006, "gone")
        self.sent.append(frame)

    async def close(self, code: int, reason: str = "") -> None:
        self.close_calls.append((code, reason))

    def feed(self, *frames) -> None:
        for frame in frames:
            self.inbox.put_nowait(frame)

    def peer_close(self, code: int, reason: str = "") -> None:
        self.inbox.put_nowait(ChannelClosed(code, reason))

    @property
    def closed_with(self) -> tuple[int, str] | None:
        return self.close_calls[0] if self.close_calls else None


class EchoChannel(FakeChannel):
    """Upstream stand-in that sends every frame straight back."""

    async def send(self, frame) -> None:
        await super().send(frame)
        self.inbox.put_nowait(frame)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def connection_context() -> ConnectionContext:
    """A typical standard-mode connection context."""
    return ConnectionContext(
        session_id="sess-test-01",
        mode=Mode.STANDARD,
        auth_method=AuthMethod.API_KEY,
        client_ip="203.0.113.7",
        origin="https://app.example.com",
    )


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings cache.

    Usage:
        override_settings(AZURE_API_KEY="sk-static", MAX_CONNECTIONS="2")
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_cache so Settings re-reads env
        get_settings.cache_clear()

    yield _override

    # Always clear cache on teardown so other tests get fresh settings
    get_settings.cache_clear()
