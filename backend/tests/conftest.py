"""Shared test fixtures and configuration for backend tests."""
import uuid
from typing import List, Optional, Sequence

import pytest
from fastapi.testclient import TestClient

from grveyard.config import AppConfig, ChatConfig, DatabaseConfig, set_config

# Keep the app from reading a local grveyard.settings.yaml or creating a DB file
set_config(AppConfig(database=DatabaseConfig(path=":memory:")))

from grveyard.chat.handler import ChatHandler, set_chat_handler  # noqa: E402
from grveyard.chat.manager import ConnectionManager  # noqa: E402
from grveyard.main import app  # noqa: E402
from grveyard.messages.schemas import MessageRecord  # noqa: E402
from grveyard.messages.store import DuckDBMessageStore, MessageStore  # noqa: E402


class FakeMessageStore(MessageStore):
    """In-memory MessageStore double that records calls."""

    def __init__(self) -> None:
        self.save_calls: List[tuple] = []
        self.presence_calls: List[tuple] = []
        self.mark_calls: List[tuple] = []
        self.save_error: Optional[Exception] = None
        self.mark_error: Optional[Exception] = None
        self.mark_result: List[str] = []
        self.history_result: List[MessageRecord] = []
        self._next_id = 1

    def save_message(self, sender_id, receiver_id, content, message_type, messaged_at) -> int:
        self.save_calls.append((sender_id, receiver_id, content, message_type, messaged_at))
        if self.save_error is not None:
            raise self.save_error
        store_id = self._next_id
        self._next_id += 1
        return store_id

    def update_last_active(self, user_id: str, last_active_epoch: int) -> None:
        self.presence_calls.append((user_id, last_active_epoch))

    def mark_as_read(self, receiver_id: str, message_ids: Sequence[str]) -> List[str]:
        self.mark_calls.append((receiver_id, list(message_ids)))
        if self.mark_error is not None:
            raise self.mark_error
        return list(self.mark_result)

    def get_history(self, user_id, peer_id, limit, before_epoch) -> List[MessageRecord]:
        return list(self.history_result)


def new_user_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def chat_config() -> ChatConfig:
    """Chat tunables with short store timeouts for tests."""
    return ChatConfig(persistence_timeout_seconds=2.0, presence_timeout_seconds=2.0)


@pytest.fixture
def message_store():
    """A DuckDB store backed by an in-memory database."""
    store = DuckDBMessageStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def fake_store() -> FakeMessageStore:
    return FakeMessageStore()


@pytest.fixture
def chat_handler(message_store, chat_config):
    """Install a ChatHandler over the in-memory DuckDB store as the global handler."""
    handler = ChatHandler(
        ConnectionManager(chat_config.outbound_queue_size), message_store, chat_config
    )
    set_chat_handler(handler)
    yield handler
    set_chat_handler(None)


@pytest.fixture
def api_client(chat_handler):
    """Provide a TestClient for the main FastAPI app.

    Entered as a context manager so every WebSocket session shares a single
    event loop (and the lifespan runs).
    """
    with TestClient(app) as client:
        yield client
