from pydantic import BaseModel, Field
from typing import Optional

from constants import (
    MAX_MESSAGE_LENGTH,
    MAX_ROOM_NAME_LENGTH,
    MAX_ROOM_MEMBERS,
    MAX_USERNAME_LENGTH,
    OUTBOUND_QUEUE_SIZE,
    SLOW_CONSUMER_GRACE_SECONDS,
    TYPING_TIMEOUT_SECONDS,
)


class HubConfig(BaseModel):
    """Limits and backpressure settings for one Hub. Defaults come from the environment."""

    max_username_length: int = Field(default=MAX_USERNAME_LENGTH, gt=0)
    max_message_length: int = Field(default=MAX_MESSAGE_LENGTH, gt=0)
    max_room_name_length: int = Field(default=MAX_ROOM_NAME_LENGTH, gt=0)
    outbound_queue_size: int = Field(default=OUTBOUND_QUEUE_SIZE, gt=0)
    typing_timeout: float = Field(default=TYPING_TIMEOUT_SECONDS, gt=0)
    slow_consumer_grace: Optional[float] = Field(default=SLOW_CONSUMER_GRACE_SECONDS, ge=0)
    max_room_members: Optional[int] = MAX_ROOM_MEMBERS or None
