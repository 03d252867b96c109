from pydantic import BaseModel
from typing import Optional


class OnlineUser(BaseModel):
    connection_id: str
    username: str
    joined_at: str

class RoomSummary(BaseModel):
    name: str
    online_users_count: int
    created_at: str

class RoomListResponse(BaseModel):
    rooms: list[RoomSummary]

class RoomDetailsResponse(BaseModel):
    name: str
    created_at: str
    max_users: Optional[int]
    online_users_count: int
    online_users: list[OnlineUser]
    typing_users: list[str]
    last_seq: int
    is_full: bool

class HubStatsResponse(BaseModel):
    status: str
    connections: int
    rooms: int
    members: int
    dropped_frames: int
    slow_consumer_disconnects: int
