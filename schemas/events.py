from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing import Annotated, Literal, Optional, Union


# Inbound frames (client -> hub)

class JoinFrame(BaseModel):
    type: Literal["join"]
    username: str
    room: str

class MessageFrame(BaseModel):
    type: Literal["message"]
    body: str
    room: Optional[str] = None

class TypingFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["typing"]
    is_typing: bool = Field(alias="isTyping")
    room: Optional[str] = None

class LeaveFrame(BaseModel):
    type: Literal["leave"]
    room: str

InboundFrame = Annotated[
    Union[JoinFrame, MessageFrame, TypingFrame, LeaveFrame],
    Field(discriminator="type"),
]

inbound_frame_adapter = TypeAdapter(InboundFrame)


# Outbound frames (hub -> client)

class OutboundFrame(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

class PresenceEvent(OutboundFrame):
    type: Literal["presence"] = "presence"
    kind: Literal["joined", "left"]
    username: str
    room: str
    count: int

class Message(OutboundFrame):
    """A chat message. Immutable once the room has assigned its sequence."""
    type: Literal["message"] = "message"
    username: str
    room: str
    seq: int
    body: str
    timestamp: str

class TypingEvent(OutboundFrame):
    type: Literal["typing"] = "typing"
    username: str
    room: str
    is_typing: bool = Field(alias="isTyping")

class JoinedAck(OutboundFrame):
    type: Literal["joined"] = "joined"
    room: str
    username: str
    members: list[str]
    count: int

class ConnectedFrame(OutboundFrame):
    type: Literal["connected"] = "connected"
    connection_id: str = Field(alias="connectionId")

class ErrorFrame(OutboundFrame):
    type: Literal["error"] = "error"
    code: str
    message: str
    room: Optional[str] = None

class DroppedNotice(OutboundFrame):
    type: Literal["dropped"] = "dropped"
    count: int

class ClosedFrame(OutboundFrame):
    type: Literal["closed"] = "closed"
    reason: str
