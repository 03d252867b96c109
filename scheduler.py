"""
Outbound delivery for every connection.

Producers (Room.broadcast) never wait on a client: ``deliver`` either queues
the frame or applies the backpressure policy for that event kind, right away.
A separate drain task per connection writes queued frames to the transport,
so one slow client only ever fills its own queue.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from connection import Connection
from schemas.events import DroppedNotice, OutboundFrame
from logging_config import get_logger

logger = get_logger(__name__)


class BackpressurePolicy(str, Enum):
    # evict the oldest queued frame of the same kind to admit the new one
    DROP_OLDEST = "drop_oldest"
    # reject the incoming frame, keep the queue as is
    DROP_NEWEST = "drop_newest"
    # reject the incoming frame and close the connection once saturation outlasts the grace
    DISCONNECT = "disconnect"


class OfferResult(str, Enum):
    QUEUED = "queued"
    EVICTED = "evicted"
    DROPPED = "dropped"
    DISCONNECT = "disconnect"
    CLOSED = "closed"


@dataclass(frozen=True)
class DeliveryPolicy:
    overflow: BackpressurePolicy
    # seconds the queue may stay saturated before the consumer is closed; None = never
    disconnect_after: Optional[float] = None


def default_policies(slow_consumer_grace: Optional[float]) -> Dict[str, DeliveryPolicy]:
    """Chat messages and presence favour completeness, typing favours freshness."""
    return {
        "message": DeliveryPolicy(BackpressurePolicy.DROP_NEWEST, slow_consumer_grace),
        "presence": DeliveryPolicy(BackpressurePolicy.DROP_NEWEST, slow_consumer_grace),
        "typing": DeliveryPolicy(BackpressurePolicy.DROP_OLDEST),
    }


def same_source(queued: OutboundFrame, incoming: OutboundFrame) -> bool:
    """True when both frames come from the same user in the same room.

    Only such a frame is superseded by the incoming one; another user's
    state (e.g. their ``isTyping: false``) must still reach the client.
    """
    return (
        getattr(queued, "username", None) == getattr(incoming, "username", None)
        and getattr(queued, "room", None) == getattr(incoming, "room", None)
    )


FailureHandler = Callable[[Connection, str], Awaitable[None]]


class BroadcastScheduler:
    def __init__(
        self,
        policies: Dict[str, DeliveryPolicy],
        on_failure: FailureHandler,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policies = policies
        self._on_failure = on_failure
        self._clock = clock
        self.dropped_frames = 0

    def policy_for(self, kind: str) -> DeliveryPolicy:
        return self.policies.get(kind, DeliveryPolicy(BackpressurePolicy.DROP_NEWEST))

    def deliver(self, conn: Connection, frame: OutboundFrame, kind: str) -> OfferResult:
        """Queue ``frame`` for ``conn`` without blocking, applying the overflow policy."""
        if not conn.is_open:
            return OfferResult.CLOSED

        queue = conn.outbound
        if not queue.is_full():
            queue.put(frame, kind)
            queue.saturated_since = None
            return OfferResult.QUEUED

        policy = self.policy_for(kind)
        if policy.overflow is BackpressurePolicy.DROP_OLDEST and queue.evict_oldest(
            kind, lambda queued: same_source(queued, frame)
        ):
            queue.put(frame, kind)
            self.dropped_frames += 1
            logger.debug(f"Evicted oldest {kind} frame for connection {conn.id} to admit a newer one")
            return OfferResult.EVICTED

        queue.record_drop()
        self.dropped_frames += 1
        logger.warning(
            f"Outbound queue full for connection {conn.id} ({len(queue)}/{queue.capacity}), "
            f"dropped {kind} frame"
        )

        if policy.overflow is BackpressurePolicy.DISCONNECT or policy.disconnect_after is not None:
            now = self._clock()
            if queue.saturated_since is None:
                queue.saturated_since = now
            if now - queue.saturated_since >= (policy.disconnect_after or 0.0):
                logger.warning(
                    f"Connection {conn.id} saturated for {now - queue.saturated_since:.1f}s, "
                    f"marking as slow consumer"
                )
                return OfferResult.DISCONNECT
        return OfferResult.DROPPED

    def start(self, conn: Connection):
        conn.drain_task = asyncio.create_task(self._drain(conn), name=f"drain-{conn.id[:8]}")
        logger.debug(f"Started drain task for connection {conn.id}")

    async def stop(self, conn: Connection):
        """Stop draining and discard whatever is still queued."""
        task, conn.drain_task = conn.drain_task, None
        discarded = conn.outbound.clear()
        if discarded:
            logger.debug(f"Discarded {discarded} queued frames for connection {conn.id}")
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Cancelled drain task for connection {conn.id}")

    async def _drain(self, conn: Connection):
        try:
            while True:
                entry = await conn.outbound.get()
                if entry.dropped_before:
                    await conn.transport.send(DroppedNotice(count=entry.dropped_before).to_wire())
                await conn.transport.send(entry.frame.to_wire())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Transport write failed for connection {conn.id}: {e}")
            await self._on_failure(conn, "transport_error")
