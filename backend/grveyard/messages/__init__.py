"""Message persistence for direct messaging."""

from .schemas import MessageRecord
from .store import DuckDBMessageStore, MessageStore, clamp_limit

__all__ = [
    "DuckDBMessageStore",
    "MessageRecord",
    "MessageStore",
    "clamp_limit",
]
