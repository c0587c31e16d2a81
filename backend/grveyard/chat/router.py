"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat?user_id=<uuid>: Real-time direct messaging
    - GET /chat/status: Currently connected users
    - GET /messages: Paginated conversation history between two users

Protocol Flow (WebSocket):
    1. Client connects with its user_id (must be a UUID)
       -> an older connection for the same user_id is closed (code 4000)
    2. Client sends: {receiver_id, content, message_type?, id?, timestamp?}
       -> receiver (if online) gets: {sender_id, receiver_id, content, id, store_id, ...}
       -> sender gets: {message_id, status: "sent" | "queued" | "error", store_id?}
    3. Client sends: {event_type: "message_read", message_ids: [...]}
       -> each online original sender gets:
          {event_type: "message_read", message_ids: [...], read_by}
    4. Server sends {event_type: "ping"} periodically; any frame from the
       client (e.g. {event_type: "pong"}) keeps the connection alive
    5. Malformed frames get: {error, code} and the connection stays open
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Header, Query, WebSocket, status
from fastapi.responses import JSONResponse

from grveyard.response import send_api_response

from .errors import IdentityMismatchError, MessageValidationError, PersistenceError
from .handler import get_chat_handler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def _is_uuid(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


# Bounds of the BIGINT columns integer query parameters are compared against
_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1


def _parse_int(value: Optional[str]) -> Optional[int]:
    """Parse an optional integer query parameter.

    Raises:
        ValueError: If the value is present but not a 64-bit integer.
    """
    if value is None or value == "":
        return None
    parsed = int(value)
    if not _INT64_MIN <= parsed <= _INT64_MAX:
        raise ValueError(f"{value} is out of range")
    return parsed


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    user_id: str = Query("", description="Authenticated user UUID"),
) -> None:
    """WebSocket endpoint for real-time direct messaging.

    The identity comes from the ``user_id`` query parameter (set by the
    authentication layer in front of this service).  Everything after the
    handshake is handled by :class:`ChatHandler`.

    Args:
        websocket: The WebSocket connection.
        user_id: Identity of the connecting user.
    """
    if not _is_uuid(user_id):
        logger.warning(f"[WS] Rejected connection with invalid user_id={user_id!r}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    await get_chat_handler().serve(websocket, user_id)


@router.get("/chat/status")
async def get_status() -> JSONResponse:
    """Get the users that currently hold a live chat connection.

    Returns:
        APIResponse with data {online_users: [...], count: N}.
    """
    snapshot = get_chat_handler().conversations.online_snapshot()
    return send_api_response(
        status.HTTP_200_OK, True, "online status", snapshot.model_dump()
    )


@router.get("/messages")
async def get_messages(
    user_id: str = Query("", description="Requesting user UUID"),
    peer_id: str = Query("", description="Peer user UUID"),
    limit: Optional[str] = Query(None, description="Maximum messages to return (max 100)"),
    before: Optional[str] = Query(None, description="Epoch seconds cursor for pagination"),
    x_user_id: Optional[str] = Header(None, description="Authenticated user UUID"),
) -> JSONResponse:
    """Get conversation history between the requesting user and a peer.

    Clients page backwards by passing the ``messaged_at`` of the oldest
    message they have as ``before``.

    Args:
        user_id: Requesting user; must match the authenticated identity.
        peer_id: The other participant.
        limit: Page size (1-100, default 50).
        before: Epoch seconds cursor; only earlier messages are returned.
        x_user_id: Authenticated identity, when an auth layer provides one.

    Returns:
        APIResponse with data {messages: [...], count: N}.

    Example:
        GET /messages?user_id=<a>&peer_id=<b>&limit=50
        GET /messages?user_id=<a>&peer_id=<b>&before=1707321600
    """
    conversations = get_chat_handler().conversations
    if not conversations.history_available:
        return send_api_response(
            status.HTTP_503_SERVICE_UNAVAILABLE, False, "message history not available"
        )

    if not _is_uuid(user_id):
        return send_api_response(
            status.HTTP_400_BAD_REQUEST, False, "invalid user_id, must be UUID"
        )
    try:
        page_size = _parse_int(limit)
    except ValueError:
        return send_api_response(status.HTTP_400_BAD_REQUEST, False, "invalid limit parameter")
    try:
        before_epoch = _parse_int(before)
    except ValueError:
        return send_api_response(status.HTTP_400_BAD_REQUEST, False, "invalid before parameter")

    try:
        records = await conversations.get_history(
            user_id,
            peer_id,
            limit=page_size,
            before=before_epoch,
            authenticated_id=x_user_id,
        )
    except IdentityMismatchError as e:
        return send_api_response(status.HTTP_403_FORBIDDEN, False, e.message)
    except MessageValidationError as e:
        return send_api_response(status.HTTP_400_BAD_REQUEST, False, e.message)
    except PersistenceError as e:
        logger.error(f"[Chat] Failed to fetch messages for {user_id} <-> {peer_id}: {e.message}")
        return send_api_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, False, "failed to fetch messages"
        )

    return send_api_response(status.HTTP_200_OK, True, "messages", {
        "messages": [record.model_dump() for record in records],
        "count": len(records),
    })
