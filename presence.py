from typing import Dict, Optional, Set

from logging_config import get_logger

logger = get_logger(__name__)


class PresenceRegistry:
    """Cross-room index of who is where.

    Answers "is this username already active in this room" and "which rooms is
    this connection in" without scanning rooms. Only the Hub's join, leave and
    disconnect paths mutate it. Usernames are compared case-insensitively.
    """

    def __init__(self):
        # normalized username -> {room: connection id}
        self._by_name: Dict[str, Dict[str, str]] = {}
        # connection id -> rooms
        self._by_conn: Dict[str, Set[str]] = {}

    def __len__(self) -> int:
        return sum(len(rooms) for rooms in self._by_conn.values())

    @staticmethod
    def normalize(username: str) -> str:
        return username.casefold()

    def holder(self, username: str, room: str) -> Optional[str]:
        return self._by_name.get(self.normalize(username), {}).get(room)

    def is_taken(self, username: str, room: str, by: Optional[str] = None) -> bool:
        """True if someone other than ``by`` holds ``username`` in ``room``."""
        holder = self.holder(username, room)
        return holder is not None and holder != by

    def add(self, username: str, room: str, conn_id: str):
        if self.is_taken(username, room, by=conn_id):
            raise ValueError(f"{username!r} already present in room {room!r}")
        self._by_name.setdefault(self.normalize(username), {})[room] = conn_id
        self._by_conn.setdefault(conn_id, set()).add(room)
        logger.debug(f"Presence add: {username} in {room} via {conn_id}")

    def remove(self, username: str, room: str, conn_id: str) -> bool:
        key = self.normalize(username)
        rooms = self._by_name.get(key)
        if not rooms or rooms.get(room) != conn_id:
            return False
        del rooms[room]
        if not rooms:
            del self._by_name[key]
        conn_rooms = self._by_conn.get(conn_id)
        if conn_rooms is not None:
            conn_rooms.discard(room)
            if not conn_rooms:
                del self._by_conn[conn_id]
        logger.debug(f"Presence remove: {username} from {room} via {conn_id}")
        return True

    def rooms_of(self, conn_id: str) -> Set[str]:
        return set(self._by_conn.get(conn_id, ()))

    def rooms_of_user(self, username: str) -> Set[str]:
        return set(self._by_name.get(self.normalize(username), {}))
