"""Tests for decoding inbound chat frames."""
from datetime import timedelta

import pytest

from grveyard.chat.errors import MessageValidationError
from grveyard.chat.schemas import ChatMessage, Heartbeat, ReadReceipt, decode_event


def test_message_is_the_default_event():
    event = decode_event({"receiver_id": "bob", "content": "hi"})
    assert isinstance(event, ChatMessage)
    assert event.content == "hi"


def test_read_receipt_and_heartbeat_are_selected_by_event_type():
    assert isinstance(decode_event({"event_type": "message_read", "message_ids": [1]}), ReadReceipt)
    assert isinstance(decode_event({"event_type": "pong"}), Heartbeat)


def test_timestamp_with_offset_is_accepted():
    event = decode_event({
        "receiver_id": "bob",
        "content": "hi",
        "timestamp": "2024-01-01T05:00:00+05:00",
    })
    assert event.timestamp.utcoffset() == timedelta(hours=5)
    assert int(event.timestamp.timestamp()) == 1_704_067_200


@pytest.mark.parametrize("timestamp", ["2024-01-01T00:00:00", "2024-01-01 12:30:00"])
def test_timestamp_without_offset_is_rejected(timestamp):
    with pytest.raises(MessageValidationError, match="invalid message format"):
        decode_event({"receiver_id": "bob", "content": "hi", "timestamp": timestamp})
