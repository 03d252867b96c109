"""
Top-level router for the broadcast hub.

The Hub owns every Connection, the room-name -> Room map and the presence
registry. Lock discipline: the Hub lock guards only the room map, each Room
lock guards that room's state, and no code path holds both at once.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from connection import Connection, ConnectionState, Transport
from errors import (
    ConnectionClosed,
    HubError,
    InvalidFrame,
    InvalidUsername,
    MessageTooLong,
    NotJoined,
    RoomFull,
    SlowConsumerDisconnected,
    UsernameTaken,
)
from presence import PresenceRegistry
from room import Room
from scheduler import BroadcastScheduler, DeliveryPolicy, default_policies
from schemas.config import HubConfig
from schemas.events import (
    ConnectedFrame,
    ErrorFrame,
    JoinedAck,
    JoinFrame,
    LeaveFrame,
    Message,
    MessageFrame,
    PresenceEvent,
    TypingFrame,
    inbound_frame_adapter,
)
from logging_config import get_logger

logger = get_logger(__name__)

SERVER_SHUTDOWN = "server_shutdown"


class Hub:
    def __init__(
        self,
        config: Optional[HubConfig] = None,
        policies: Optional[Dict[str, DeliveryPolicy]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or HubConfig()
        self._clock = clock
        self.presence = PresenceRegistry()
        self.scheduler = BroadcastScheduler(
            policies or default_policies(self.config.slow_consumer_grace),
            on_failure=self._on_transport_failure,
            clock=clock,
        )
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()
        self.slow_consumer_disconnects = 0
        self._close_tasks: Set[asyncio.Task] = set()
        logger.info(
            f"Hub initialized: queue_size={self.config.outbound_queue_size}, "
            f"max_room_members={self.config.max_room_members}"
        )

    # ------------------------------------------------------------------
    # Lookup and validation
    # ------------------------------------------------------------------

    def connection(self, conn_id: str) -> Optional[Connection]:
        return self._connections.get(conn_id)

    def get_room(self, name: str) -> Optional[Room]:
        return self._rooms.get(name)

    def rooms(self) -> List[Room]:
        return sorted(self._rooms.values(), key=lambda r: r.name)

    def _open_connection(self, conn_id: str) -> Connection:
        conn = self._connections.get(conn_id)
        if conn is None or not conn.is_open:
            raise ConnectionClosed(f"Connection {conn_id} is not open")
        return conn

    def validate_username(self, username: str) -> str:
        name = (username or "").strip()
        if not name:
            raise InvalidUsername("Username must not be empty")
        if len(name) > self.config.max_username_length:
            raise InvalidUsername(
                f"Username exceeds {self.config.max_username_length} characters",
                details={"max_length": self.config.max_username_length},
            )
        if not name.isprintable():
            raise InvalidUsername("Username contains disallowed characters")
        return name

    def validate_room_name(self, room: str) -> str:
        name = (room or "").strip()
        if not name or len(name) > self.config.max_room_name_length or not name.isprintable():
            raise InvalidFrame(f"Invalid room name {room!r}")
        return name

    def validate_body(self, body: str):
        if len(body) > self.config.max_message_length:
            raise MessageTooLong(
                f"Message exceeds {self.config.max_message_length} characters",
                details={"max_length": self.config.max_message_length, "length": len(body)},
            )
        if not body.strip():
            raise InvalidFrame("Message body is empty")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, transport: Transport) -> str:
        conn = Connection(transport, self.config.outbound_queue_size, clock=self._clock)
        self._connections[conn.id] = conn
        self.scheduler.start(conn)
        logger.info(f"Connection {conn.id} registered ({len(self._connections)} open)")
        return conn.id

    async def disconnect(
        self,
        conn_id: str,
        reason: Optional[str] = None,
        code: int = 1000,
        background_close: bool = False,
    ):
        """Close a connection and release every membership it holds. Idempotent.

        Queued outbound frames are discarded, not flushed. With
        ``background_close`` the transport is closed in a task tracked by the
        hub, so the caller never waits on the closing client's channel.
        """
        conn = self._connections.get(conn_id)
        if conn is None or conn.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        conn.state = ConnectionState.CLOSING
        conn.close_reason = reason
        await self.scheduler.stop(conn)

        slow: List[Connection] = []
        rooms = self.presence.rooms_of(conn.id)
        for room_name in sorted(rooms):
            room = self._rooms.get(room_name)
            if room is not None:
                slow.extend(await self._remove_membership(conn, room))

        self._connections.pop(conn.id, None)
        conn.state = ConnectionState.CLOSED
        logger.info(
            f"Connection {conn.id} ({conn.username}) disconnected from {len(rooms)} rooms"
            + (f", reason: {reason}" if reason else "")
        )
        if background_close:
            task = asyncio.create_task(
                conn.close_transport(reason, code=code), name=f"close-{conn.id[:8]}"
            )
            self._close_tasks.add(task)
            task.add_done_callback(self._close_tasks.discard)
        else:
            await conn.close_transport(reason, code=code)
        await self._evict(slow)

    async def wait_closed(self):
        """Wait for background transport closes started by evictions."""
        while self._close_tasks:
            await asyncio.gather(*list(self._close_tasks), return_exceptions=True)

    async def shutdown(self):
        logger.info(f"Shutting down hub with {len(self._connections)} open connections")
        for conn_id in list(self._connections):
            await self.disconnect(conn_id, reason=SERVER_SHUTDOWN, code=1001)
        await self.wait_closed()

    async def _on_transport_failure(self, conn: Connection, reason: str):
        logger.info(f"Closing connection {conn.id} after {reason}")
        await self.disconnect(conn.id)

    async def _evict(self, slow: List[Connection]):
        for conn in slow:
            if not conn.is_open:
                continue
            self.slow_consumer_disconnects += 1
            logger.warning(f"Disconnecting slow consumer {conn.id} ({conn.username})")
            await self.disconnect(
                conn.id,
                reason=SlowConsumerDisconnected.code,
                code=1008,
                background_close=True,
            )

    # ------------------------------------------------------------------
    # Room map
    # ------------------------------------------------------------------

    async def _get_or_create_room(self, name: str) -> Room:
        async with self._lock:
            room = self._rooms.get(name)
            if room is None:
                room = Room(name, self.scheduler, self.config.typing_timeout, clock=self._clock)
                self._rooms[name] = room
                logger.info(f"Room {name} created ({len(self._rooms)} rooms)")
            return room

    async def _forget_room(self, room: Room):
        async with self._lock:
            if self._rooms.get(room.name) is room:
                del self._rooms[room.name]
                logger.info(f"Room {room.name} is empty, removed ({len(self._rooms)} rooms)")

    async def _drop_if_empty(self, room: Room):
        async with room.lock:
            if len(room) or room.closed:
                return
            room.closed = True
        await self._forget_room(room)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def join(self, conn_id: str, room_name: str, username: str) -> JoinedAck:
        conn = self._open_connection(conn_id)
        username = self.validate_username(username)
        room_name = self.validate_room_name(room_name)
        if conn.username is not None:
            if self.presence.normalize(conn.username) != self.presence.normalize(username):
                raise InvalidUsername(
                    f"Connection is already joined as {conn.username!r}",
                    details={"username": conn.username},
                )
            # one connection, one name: keep the spelling it first joined with
            username = conn.username

        while True:
            room = await self._get_or_create_room(room_name)
            try:
                async with room.lock:
                    if room.closed:
                        continue
                    holder = self.presence.holder(username, room_name)
                    if holder == conn.id:
                        logger.debug(f"Connection {conn.id} already in room {room_name}, ignoring join")
                        return JoinedAck(room=room_name, username=conn.username, members=room.usernames(), count=len(room))
                    if holder is not None:
                        raise UsernameTaken(
                            f"Username {username!r} is already taken in room {room_name!r}",
                            details={"room": room_name},
                        )
                    cap = self.config.max_room_members
                    if cap and len(room) >= cap:
                        raise RoomFull(f"Room {room_name!r} is full ({cap} members)", details={"room": room_name})
                    if not conn.is_open:
                        raise ConnectionClosed(f"Connection {conn.id} closed while joining")

                    count = room.add_member(conn, username)
                    self.presence.add(username, room_name, conn.id)
                    conn.username = username
                    conn.state = ConnectionState.JOINED
                    others = room.snapshot(exclude=conn.id)
                    ack = JoinedAck(room=room_name, username=username, members=room.usernames(), count=count)
                    self.scheduler.deliver(conn, ack, "ack")
            except HubError:
                await self._drop_if_empty(room)
                raise
            break

        logger.info(f"User {username} ({conn.id}) joined room {room_name} ({count} members)")
        event = PresenceEvent(kind="joined", username=username, room=room_name, count=count)
        await self._evict(room.broadcast(event, "presence", targets=others))
        return ack

    async def leave(self, conn_id: str, room_name: str):
        conn = self._open_connection(conn_id)
        room = self._rooms.get(room_name)
        if room is None or not room.has_member(conn.id):
            raise NotJoined(f"Not a member of room {room_name!r}", details={"room": room_name})
        slow = await self._remove_membership(conn, room)
        if not self.presence.rooms_of(conn.id) and conn.is_open:
            conn.state = ConnectionState.CONNECTING
            conn.username = None
        await self._evict(slow)

    async def _remove_membership(self, conn: Connection, room: Room) -> List[Connection]:
        async with room.lock:
            member = room.member(conn.id)
            if member is None:
                return []
            empty = room.remove_member(conn.id)
            self.presence.remove(member.username, room.name, conn.id)
            count = len(room)
            targets = room.snapshot()
            if empty:
                room.closed = True
        logger.info(f"User {member.username} ({conn.id}) left room {room.name} ({count} members)")
        if empty:
            await self._forget_room(room)
            return []
        event = PresenceEvent(kind="left", username=member.username, room=room.name, count=count)
        return room.broadcast(event, "presence", targets=targets)

    # ------------------------------------------------------------------
    # Messages and typing
    # ------------------------------------------------------------------

    def _joined_room(self, conn: Connection, room_name: str) -> Room:
        room = self._rooms.get(room_name)
        if conn.state is not ConnectionState.JOINED or room is None or not room.has_member(conn.id):
            raise NotJoined(f"Not a member of room {room_name!r}", details={"room": room_name})
        return room

    async def send(self, conn_id: str, room_name: str, body: str) -> Message:
        conn = self._open_connection(conn_id)
        room = self._joined_room(conn, room_name)
        self.validate_body(body)
        message, slow = await room.post(conn, body)
        logger.debug(f"Message #{message.seq} from {message.username} in room {room_name}")
        await self._evict(slow)
        return message

    async def set_typing(self, conn_id: str, room_name: str, is_typing: bool):
        conn = self._open_connection(conn_id)
        room = self._joined_room(conn, room_name)
        await self._evict(await room.update_typing(conn, is_typing))

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    def _implicit_room(self, conn: Connection) -> str:
        rooms = self.presence.rooms_of(conn.id)
        if len(rooms) == 1:
            return next(iter(rooms))
        if not rooms:
            raise NotJoined("Join a room first")
        raise InvalidFrame("Frame must name a room when joined to several rooms")

    async def dispatch(self, conn_id: str, raw: Union[str, bytes, Dict[str, Any]]):
        """Decode one inbound frame and route it to the matching operation."""
        conn = self._open_connection(conn_id)
        conn.touch()
        try:
            if isinstance(raw, dict):
                frame = inbound_frame_adapter.validate_python(raw)
            else:
                frame = inbound_frame_adapter.validate_json(raw)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            raise InvalidFrame(f"Malformed frame: {first.get('msg', 'invalid payload')}")

        if isinstance(frame, JoinFrame):
            return await self.join(conn.id, frame.room, frame.username)
        if isinstance(frame, LeaveFrame):
            return await self.leave(conn.id, frame.room)

        room_name = frame.room or self._implicit_room(conn)
        if isinstance(frame, MessageFrame):
            return await self.send(conn.id, room_name, frame.body)
        if isinstance(frame, TypingFrame):
            return await self.set_typing(conn.id, room_name, frame.is_typing)

    def greet(self, conn_id: str):
        conn = self._open_connection(conn_id)
        self.scheduler.deliver(conn, ConnectedFrame(connection_id=conn.id), "ack")

    def report(self, conn_id: str, error: HubError):
        """Send an error frame to the connection that caused it, and to no one else."""
        conn = self._connections.get(conn_id)
        if conn is None or not conn.is_open:
            return
        frame = ErrorFrame(code=error.code, message=error.message, room=error.details.get("room"))
        self.scheduler.deliver(conn, frame, "error")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        return {
            "connections": len(self._connections),
            "rooms": len(self._rooms),
            "members": len(self.presence),
            "dropped_frames": self.scheduler.dropped_frames,
            "slow_consumer_disconnects": self.slow_consumer_disconnects,
        }
