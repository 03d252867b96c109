"""
Error taxonomy for the broadcast hub.

Every per-event failure is a HubError. The WebSocket endpoint turns it into an
``error`` frame addressed to the originating connection only; none of these
are allowed to escape into the Hub or affect other connections.
"""

from typing import Any, Dict, Optional


class HubError(Exception):
    """
    Base class for all hub errors.

    Attributes:
        message: Human-readable error message
        code: Stable snake_case code sent to clients in ``error`` frames
        details: Extra context (room, limits, ...)
    """

    code = "hub_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r})"
        )


class InvalidUsername(HubError):
    """Username is empty, too long, contains control characters, or does not
    match the name already bound to the connection."""

    code = "invalid_username"


class UsernameTaken(HubError):
    """Another connection already holds this username in the room."""

    code = "username_taken"


class NotJoined(HubError):
    """A message, typing or leave event arrived for a room the connection is
    not a member of."""

    code = "not_joined"


class MessageTooLong(HubError):
    code = "message_too_long"


class RoomFull(HubError):
    code = "room_full"


class InvalidFrame(HubError):
    """Inbound frame could not be decoded, or carried an empty body."""

    code = "invalid_frame"


class ConnectionClosed(HubError):
    """Operation on a connection id the hub does not know, or one that is
    already closing."""

    code = "connection_closed"


class SlowConsumerDisconnected(HubError):
    """
    Terminal close reason for a connection whose outbound queue stayed full
    past the grace period. Never retried.
    """

    code = "slow_consumer"

    def __init__(
        self,
        message: str = "Outbound queue saturated, closing connection",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
