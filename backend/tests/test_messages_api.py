"""Tests for the conversation history endpoint (GET /messages)."""
import uuid

import pytest
from fastapi.testclient import TestClient

from grveyard.chat.errors import PersistenceError
from grveyard.chat.handler import ChatHandler, set_chat_handler
from grveyard.chat.manager import ConnectionManager
from grveyard.config import ChatConfig
from grveyard.main import app

ALICE = str(uuid.uuid4())
BOB = str(uuid.uuid4())
CAROL = str(uuid.uuid4())


@pytest.fixture
def conversation(message_store):
    """Alice and Bob exchange 25 messages, one per second starting at 1000."""
    for i in range(25):
        sender, receiver = (ALICE, BOB) if i % 2 == 0 else (BOB, ALICE)
        message_store.save_message(sender, receiver, f"m{i}", 0, 1000 + i)
    message_store.save_message(ALICE, CAROL, "elsewhere", 0, 1010)
    return message_store


def fetch(client, **params):
    params.setdefault("user_id", ALICE)
    params.setdefault("peer_id", BOB)
    return client.get("/messages", params=params)


class TestHistoryPage:
    def test_returns_envelope_with_messages(self, api_client, conversation):
        resp = fetch(api_client, limit=5)

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["message"] == "messages"
        assert body["data"]["count"] == 5
        assert [m["content"] for m in body["data"]["messages"]] == [f"m{i}" for i in range(20, 25)]
        first = body["data"]["messages"][0]
        assert set(first) == {
            "id", "sender_id", "receiver_id", "content", "message_type", "is_read", "messaged_at",
        }

    def test_default_limit(self, api_client, conversation):
        body = fetch(api_client).json()
        # Fewer than the default page size exist for this pair
        assert body["data"]["count"] == 25

    def test_backward_pagination(self, api_client, conversation):
        seen = []
        before = None
        for _ in range(10):
            params = {"limit": 10}
            if before is not None:
                params["before"] = before
            messages = fetch(api_client, **params).json()["data"]["messages"]
            if not messages:
                break
            seen = messages + seen
            before = messages[0]["messaged_at"]

        assert [m["content"] for m in seen] == [f"m{i}" for i in range(25)]

    def test_before_cursor_excludes_equal_timestamps(self, api_client, conversation):
        messages = fetch(api_client, before=1003).json()["data"]["messages"]
        assert [m["messaged_at"] for m in messages] == [1000, 1001, 1002]

    def test_empty_conversation(self, api_client, message_store):
        body = fetch(api_client, peer_id=CAROL).json()
        assert body["data"] == {"messages": [], "count": 0}

    def test_matching_identity_header_is_allowed(self, api_client, conversation):
        resp = api_client.get(
            "/messages",
            params={"user_id": ALICE, "peer_id": BOB, "limit": 1},
            headers={"X-User-Id": ALICE},
        )
        assert resp.status_code == 200


class TestHistoryErrors:
    @pytest.mark.parametrize(
        "params, message",
        [
            ({"user_id": "nope"}, "invalid user_id, must be UUID"),
            ({"user_id": ""}, "invalid user_id, must be UUID"),
            ({"limit": "ten"}, "invalid limit parameter"),
            ({"before": "yesterday"}, "invalid before parameter"),
            ({"before": "99999999999999999999"}, "invalid before parameter"),
            ({"before": "-99999999999999999999"}, "invalid before parameter"),
            ({"limit": "99999999999999999999"}, "invalid limit parameter"),
            ({"peer_id": ""}, "peer_id is required"),
        ],
    )
    def test_bad_request(self, api_client, params, message):
        resp = fetch(api_client, **params)

        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["message"] == message
        assert "data" not in body

    def test_identity_mismatch_is_forbidden(self, api_client, conversation):
        resp = api_client.get(
            "/messages",
            params={"user_id": ALICE, "peer_id": BOB},
            headers={"X-User-Id": CAROL},
        )

        assert resp.status_code == 403
        assert resp.json()["message"] == "forbidden: can only fetch your own messages"

    def test_history_unavailable_without_store(self):
        set_chat_handler(ChatHandler(ConnectionManager(), None, ChatConfig()))
        try:
            with TestClient(app) as client:
                resp = fetch(client)
        finally:
            set_chat_handler(None)

        assert resp.status_code == 503
        assert resp.json() == {
            "success": False,
            "message": "message history not available",
            "created_at": resp.json()["created_at"],
        }

    def test_store_failure_is_internal_error(self, fake_store):
        class BrokenStore(type(fake_store)):
            def get_history(self, *args):
                raise PersistenceError("disk on fire")

        set_chat_handler(ChatHandler(ConnectionManager(), BrokenStore(), ChatConfig()))
        try:
            with TestClient(app) as client:
                resp = fetch(client)
        finally:
            set_chat_handler(None)

        assert resp.status_code == 500
        assert resp.json()["message"] == "failed to fetch messages"
