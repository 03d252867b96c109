"""Tests for the error taxonomy."""

import pytest

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


@pytest.mark.parametrize("error_class, code", [
    (InvalidUsername, "invalid_username"),
    (UsernameTaken, "username_taken"),
    (NotJoined, "not_joined"),
    (MessageTooLong, "message_too_long"),
    (RoomFull, "room_full"),
    (InvalidFrame, "invalid_frame"),
    (ConnectionClosed, "connection_closed"),
])
def test_codes(error_class, code):
    error = error_class("nope")
    assert isinstance(error, HubError)
    assert error.code == code
    assert str(error) == f"[{code}] nope"


def test_details_default_to_empty():
    assert HubError("x").details == {}
    assert RoomFull("x", details={"room": "general"}).details == {"room": "general"}


def test_code_override():
    assert HubError("x", code="custom").code == "custom"
    assert HubError("y").code == "hub_error"


def test_slow_consumer_has_default_message():
    error = SlowConsumerDisconnected()
    assert error.code == "slow_consumer"
    assert "saturated" in error.message
    assert repr(error) == f"SlowConsumerDisconnected(message={error.message!r}, code='slow_consumer')"
