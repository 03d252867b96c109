"""
A Room is one broadcast domain. Nothing published here reaches another room.

State (members, typing table, sequence counter) is guarded by ``Room.lock``.
Methods that only touch that state are synchronous and expect the caller to
hold the lock; ``post`` and ``update_typing`` take it themselves. Fan-out runs
after the lock is released, over a snapshot of the member map, and never
awaits, so frames reach every queue in sequence order.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from connection import Connection
from errors import NotJoined
from scheduler import BroadcastScheduler, OfferResult
from schemas.events import Message, OutboundFrame, TypingEvent
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Member:
    conn: Connection
    username: str
    joined_at: str


class Room:
    def __init__(
        self,
        name: str,
        scheduler: BroadcastScheduler,
        typing_timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.created_at = datetime.now(timezone.utc).isoformat()
        self.lock = asyncio.Lock()
        # set once the hub has dropped this room; joins must go to a fresh one
        self.closed = False
        self._scheduler = scheduler
        self._typing_timeout = typing_timeout
        self._clock = clock
        self._members: Dict[str, Member] = {}
        self._typing: Dict[str, float] = {}
        self._seq = 0

    def __len__(self) -> int:
        return len(self._members)

    def __repr__(self) -> str:
        return f"Room(name={self.name!r}, members={len(self._members)}, seq={self._seq})"

    @property
    def last_seq(self) -> int:
        return self._seq

    def has_member(self, conn_id: str) -> bool:
        return conn_id in self._members

    def member(self, conn_id: str) -> Optional[Member]:
        return self._members.get(conn_id)

    def members(self) -> List[Member]:
        return list(self._members.values())

    def usernames(self) -> List[str]:
        return [m.username for m in self._members.values()]

    def snapshot(self, exclude: Optional[str] = None) -> List[Connection]:
        return [m.conn for cid, m in self._members.items() if cid != exclude]

    def add_member(self, conn: Connection, username: str) -> int:
        self._members[conn.id] = Member(conn, username, datetime.now(timezone.utc).isoformat())
        return len(self._members)

    def remove_member(self, conn_id: str) -> bool:
        """Drop a member and its typing entry. Returns True if the room is now empty."""
        member = self._members.pop(conn_id, None)
        if member is not None:
            self._typing.pop(member.username, None)
        if not self._members:
            self._typing.clear()
            return True
        return False

    def next_sequence(self) -> int:
        self._seq += 1
        return self._seq

    def set_typing(self, username: str, is_typing: bool):
        if is_typing:
            self._typing[username] = self._clock()
        else:
            self._typing.pop(username, None)

    def typing_users(self) -> List[str]:
        """Usernames typing within the timeout. Expired entries are pruned here, on read."""
        cutoff = self._clock() - self._typing_timeout
        expired = [name for name, ts in self._typing.items() if ts <= cutoff]
        for name in expired:
            del self._typing[name]
        return list(self._typing)

    def broadcast(
        self,
        event: OutboundFrame,
        kind: str,
        exclude: Optional[str] = None,
        targets: Optional[List[Connection]] = None,
    ) -> List[Connection]:
        """Queue ``event`` for every member except ``exclude``.

        ``targets`` is a member snapshot taken under the lock; without one the
        current member map is snapshotted here. Returns the connections the
        scheduler flagged as slow consumers so the hub can close them.
        """
        if targets is None:
            targets = self.snapshot(exclude)
        elif exclude is not None:
            targets = [c for c in targets if c.id != exclude]

        slow = []
        for conn in targets:
            if self._scheduler.deliver(conn, event, kind) is OfferResult.DISCONNECT:
                slow.append(conn)
        logger.debug(f"Broadcast {kind} to {len(targets)} members of room {self.name}")
        return slow

    async def post(self, conn: Connection, body: str) -> Tuple[Message, List[Connection]]:
        """Sequence a chat message from ``conn`` and fan it out to all members, sender included."""
        async with self.lock:
            member = self._members.get(conn.id)
            if member is None:
                raise NotJoined(f"Not a member of room {self.name!r}", details={"room": self.name})
            message = Message(
                username=member.username,
                room=self.name,
                seq=self.next_sequence(),
                body=body,
                timestamp=datetime.now(timezone.utc).isoformat(),
            )
            targets = self.snapshot()
        return message, self.broadcast(message, "message", targets=targets)

    async def update_typing(self, conn: Connection, is_typing: bool) -> List[Connection]:
        async with self.lock:
            member = self._members.get(conn.id)
            if member is None:
                raise NotJoined(f"Not a member of room {self.name!r}", details={"room": self.name})
            self.set_typing(member.username, is_typing)
            targets = self.snapshot(exclude=conn.id)
        event = TypingEvent(username=member.username, room=self.name, is_typing=is_typing)
        return self.broadcast(event, "typing", targets=targets)
