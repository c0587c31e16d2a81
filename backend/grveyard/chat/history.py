"""Conversation history and presence queries.

This is the request/response surface the HTTP layer uses next to the
WebSocket pipeline:

    - get_history: backward-paginated history for a pair of identities
    - online_snapshot: who is connected right now

Pagination:
    Pages are selected newest-first below the ``before`` cursor and returned
    oldest-first.  Passing the earliest ``messaged_at`` of a page as the next
    ``before`` yields the next older page.
"""
import asyncio
import logging
import time
from typing import TYPE_CHECKING, List, Optional

from pydantic import BaseModel, Field

from grveyard.config import ChatConfig
from grveyard.messages.schemas import MessageRecord

from .errors import IdentityMismatchError, MessageValidationError, PersistenceError

if TYPE_CHECKING:
    from grveyard.messages.store import MessageStore

    from .manager import ConnectionManager

logger = logging.getLogger(__name__)


class OnlineSnapshot(BaseModel):
    """Point-in-time view of connected identities."""
    online_users: List[str] = Field(default_factory=list)
    count: int = 0


class ConversationService:
    """History and presence queries over the registry and the message store."""

    def __init__(
        self,
        manager: "ConnectionManager",
        store: Optional["MessageStore"],
        config: Optional[ChatConfig] = None,
    ) -> None:
        self.manager = manager
        self.store = store
        self.config = config or ChatConfig()

    @property
    def history_available(self) -> bool:
        return self.store is not None

    def resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None or limit <= 0:
            return self.config.default_history_limit
        return min(limit, self.config.max_history_limit)

    async def get_history(
        self,
        requester_id: str,
        peer_id: str,
        limit: Optional[int] = None,
        before: Optional[int] = None,
        authenticated_id: Optional[str] = None,
    ) -> List[MessageRecord]:
        """Fetch one page of the conversation between two identities.

        Args:
            requester_id: Identity asking for its own conversation.
            peer_id: The other participant.
            limit: Page size (default 50, capped at 100).
            before: Epoch-seconds cursor; only earlier messages are returned.
                Defaults to the end of the current second.
            authenticated_id: Identity established by the transport, if any.

        Returns:
            Records oldest first.

        Raises:
            IdentityMismatchError: ``authenticated_id`` differs from ``requester_id``.
            MessageValidationError: ``peer_id`` is missing.
            PersistenceError: No store is configured or the query failed.
        """
        if authenticated_id is not None and authenticated_id != requester_id:
            raise IdentityMismatchError("forbidden: can only fetch your own messages")
        if not peer_id:
            raise MessageValidationError("peer_id is required")
        if self.store is None:
            raise PersistenceError("message history not available")

        if before is None:
            before = int(time.time()) + 1
        page_size = self.resolve_limit(limit)
        timeout = self.config.persistence_timeout_seconds

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.store.get_history, requester_id, peer_id, page_size, before),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise PersistenceError(f"history query timed out after {timeout}s")

    def online_snapshot(self) -> OnlineSnapshot:
        users = sorted(self.manager.list_online())
        return OnlineSnapshot(online_users=users, count=len(users))
