import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Optional, Protocol

from schemas.events import ClosedFrame, DroppedNotice, OutboundFrame
from logging_config import get_logger

logger = get_logger(__name__)

# a slow consumer may never read its close reason
CLOSE_FRAME_TIMEOUT = 1.0


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    JOINED = "joined"
    CLOSING = "closing"
    CLOSED = "closed"


class Transport(Protocol):
    """Reliable, ordered, bidirectional channel to one client (e.g. a WebSocket)."""

    async def send(self, frame: dict) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


@dataclass
class QueuedFrame:
    frame: OutboundFrame
    kind: str
    # frames dropped immediately before this one; the drain loop reports them first
    dropped_before: int = 0


class OutboundQueue:
    """Bounded FIFO of frames waiting to be written to one client.

    Never grows past ``capacity``. Overflow handling is the scheduler's job;
    this class only records drops so the consumer can be told about gaps.
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._items: Deque[QueuedFrame] = deque()
        self._not_empty = asyncio.Event()
        self._pending_drops = 0
        self.dropped_total = 0
        self.saturated_since: Optional[float] = None

    def __len__(self) -> int:
        return len(self._items)

    def is_full(self) -> bool:
        return len(self._items) >= self.capacity

    def put(self, frame: OutboundFrame, kind: str):
        if self.is_full():
            raise OverflowError("outbound queue is full")
        self._items.append(QueuedFrame(frame, kind, self._pending_drops))
        self._pending_drops = 0
        self._not_empty.set()

    def record_drop(self, count: int = 1):
        self._pending_drops += count
        self.dropped_total += count
        self._not_empty.set()

    def evict_oldest(
        self,
        kind: str,
        match: Optional[Callable[[OutboundFrame], bool]] = None,
    ) -> bool:
        """Remove the oldest queued frame of ``kind`` accepted by ``match``.

        Returns False if no such frame is queued.
        """
        for index, entry in enumerate(self._items):
            if entry.kind != kind:
                continue
            if match is not None and not match(entry.frame):
                continue
            del self._items[index]
            carried = entry.dropped_before + 1
            self.dropped_total += 1
            if index < len(self._items):
                self._items[index].dropped_before += carried
            else:
                self._pending_drops += carried
            return True
        return False

    async def get(self) -> QueuedFrame:
        while True:
            if self._items:
                return self._items.popleft()
            if self._pending_drops:
                count, self._pending_drops = self._pending_drops, 0
                return QueuedFrame(DroppedNotice(count=count), "notice")
            self._not_empty.clear()
            await self._not_empty.wait()

    def clear(self) -> int:
        discarded = len(self._items)
        self._items.clear()
        self._pending_drops = 0
        return discarded


class Connection:
    def __init__(
        self,
        transport: Transport,
        queue_size: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.id = uuid.uuid4().hex
        self.transport = transport
        self.username: Optional[str] = None
        self.state = ConnectionState.CONNECTING
        self.outbound = OutboundQueue(queue_size)
        self.connected_at = datetime.now(timezone.utc).isoformat()
        self.last_activity = clock()
        self.close_reason: Optional[str] = None
        self.drain_task: Optional[asyncio.Task] = None
        self._clock = clock

    def __repr__(self) -> str:
        return f"Connection(id={self.id[:8]}, username={self.username!r}, state={self.state.value})"

    @property
    def is_open(self) -> bool:
        return self.state in (ConnectionState.CONNECTING, ConnectionState.JOINED)

    def touch(self):
        self.last_activity = self._clock()

    async def close_transport(self, reason: Optional[str] = None, code: int = 1000):
        """Tell the client why it is being closed, then close the channel. Best effort."""
        if reason:
            try:
                await asyncio.wait_for(
                    self.transport.send(ClosedFrame(reason=reason).to_wire()),
                    timeout=CLOSE_FRAME_TIMEOUT,
                )
            except Exception as e:
                logger.debug(f"Could not send close reason to connection {self.id}: {e}")
        try:
            await asyncio.wait_for(
                self.transport.close(code=code, reason=reason or ""),
                timeout=CLOSE_FRAME_TIMEOUT,
            )
        except Exception as e:
            logger.debug(f"Error closing transport for connection {self.id}: {e}")
