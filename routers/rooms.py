from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import OnlineUser, RoomDetailsResponse, RoomListResponse, RoomSummary
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/", response_model=RoomListResponse)
async def list_rooms(request: Request):
    hub = request.app.state.hub
    rooms = [
        RoomSummary(name=room.name, online_users_count=len(room), created_at=room.created_at)
        for room in hub.rooms()
    ]
    logger.debug(f"Listing {len(rooms)} rooms")
    return RoomListResponse(rooms=rooms)


@rooms_router.get("/{room_name}", response_model=RoomDetailsResponse)
async def get_room_details(room_name: str, request: Request):
    """
    Get room details including who is online and who is typing.

    Returns:
    - name: Room name
    - created_at: Room creation timestamp
    - max_users: Member cap, null when unlimited
    - online_users_count: Current number of members
    - online_users: Members with their connection ids
    - typing_users: Members who typed within the typing timeout
    - last_seq: Sequence number of the latest message
    - is_full: Whether the room has reached its member cap
    """
    hub = request.app.state.hub
    room = hub.get_room(room_name)
    if room is None:
        logger.info(f"Room details failed: Room {room_name} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    async with room.lock:
        members = room.members()
        typing_users = room.typing_users()
        last_seq = room.last_seq

    max_users = hub.config.max_room_members
    online_users_count = len(members)
    logger.debug(f"Room details retrieved for {room_name}: {online_users_count} users online")

    return RoomDetailsResponse(
        name=room.name,
        created_at=room.created_at,
        max_users=max_users,
        online_users_count=online_users_count,
        online_users=[
            OnlineUser(connection_id=m.conn.id, username=m.username, joined_at=m.joined_at)
            for m in members
        ],
        typing_users=typing_users,
        last_seq=last_seq,
        is_full=bool(max_users) and online_users_count >= max_users,
    )
