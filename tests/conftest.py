"""Pytest configuration and fixtures for the broadcast hub tests."""

import asyncio
from typing import List, Optional, Tuple

import pytest
import pytest_asyncio

from hub import Hub
from schemas.config import HubConfig


# ============================================================================
# Fakes
# ============================================================================


class RecordingTransport:
    """In-memory transport that records every frame the hub writes.

    Created with ``blocked=True`` it behaves like a client that stopped
    reading: writes hang until ``unblock()`` is called. Close-reason frames
    are never held back so evicting a stuck client stays fast in tests.
    """

    def __init__(self, blocked: bool = False):
        self.frames: List[dict] = []
        self.closed: Optional[Tuple[int, str]] = None
        self.fail = False
        self._gate = asyncio.Event()
        if not blocked:
            self._gate.set()

    async def send(self, frame: dict):
        if frame.get("type") != "closed":
            await self._gate.wait()
        if self.fail:
            raise ConnectionResetError("client went away")
        self.frames.append(frame)

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed = (code, reason)

    def unblock(self):
        self._gate.set()

    def of_type(self, frame_type: str) -> List[dict]:
        return [f for f in self.frames if f["type"] == frame_type]

    def seqs(self) -> List[int]:
        return [f["seq"] for f in self.of_type("message")]


class HangingTransport(RecordingTransport):
    """A client whose socket never completes a write or a close handshake."""

    def __init__(self):
        super().__init__(blocked=True)
        self.close_attempts = 0

    async def send(self, frame: dict):
        await asyncio.Event().wait()

    async def close(self, code: int = 1000, reason: str = ""):
        self.close_attempts += 1
        await asyncio.Event().wait()


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def settle(rounds: int = 20):
    """Give every drain task a chance to flush its queue."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config():
    return HubConfig(
        max_username_length=20,
        max_message_length=500,
        outbound_queue_size=256,
        typing_timeout=1.0,
        slow_consumer_grace=5.0,
        max_room_members=None,
    )


@pytest_asyncio.fixture
async def hub(config, clock):
    hub = Hub(config, clock=clock)
    yield hub
    await hub.shutdown()


@pytest.fixture
def connect(hub):
    """Connect a client with a fresh RecordingTransport, returning (connection id, transport)."""

    async def _connect(blocked: bool = False):
        transport = RecordingTransport(blocked=blocked)
        conn_id = await hub.connect(transport)
        return conn_id, transport

    return _connect
