"""Delivery pipeline for real-time direct messaging.

Each accepted WebSocket goes through::

    Connecting -> Active -> Draining -> Closed

``Connecting`` registers the connection and stamps presence.  ``Active`` runs
two independent loops:

    - read loop: decodes one frame at a time and spawns a task per event, so a
      slow store call on one message never stalls decoding of the next frame.
      Exits on disconnect, liveness timeout or transport error.
    - write loop: drains the connection's outbound queue to the socket.

Liveness:
    uvicorn sends protocol-level pings every ``ping_interval_seconds`` (see
    ``grveyard.main.uvicorn_options``); browsers answer them automatically and
    a peer that stops answering shows up as a disconnect.  With
    ``app_heartbeat`` enabled the write loop also sends ``{"event_type": "ping"}``
    frames and the read loop drops a client that sends nothing for
    ``read_timeout_seconds``.

Whichever loop finishes first (or a supersession) closes the connection's
done signal; ``Draining`` then deregisters, closes the transport and stamps
presence again.

Message processing (per inbound message):
    1. validate (content 1..max chars, receiver present, receiver != sender)
    2. normalize (id, timestamp, sender forced to the authenticated identity)
    3. persist through the store, bounded by a timeout
    4. deliver to the receiver's outbound queue if the receiver is online
    5. acknowledge the sender with ``sent`` / ``queued`` / ``error``

Read receipts mark messages read through the store (scoped to the reader as
receiver) and notify each affected sender that is currently online.
"""
import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from grveyard.config import ChatConfig, get_config
from grveyard.messages.store import DuckDBMessageStore, MessageStore

from .errors import DeliveryError, MessageValidationError, PersistenceError, TransportError
from .history import ConversationService
from .manager import CLOSE_NORMAL, Connection, ConnectionManager
from .schemas import (
    PING,
    PING_EVENT,
    PONG_EVENT,
    AckStatus,
    Acknowledgement,
    ChatMessage,
    ErrorResponse,
    Heartbeat,
    InboundEvent,
    ReadReceipt,
    ReadReceiptNotification,
    decode_event,
    to_wire,
)

logger = logging.getLogger(__name__)


class ChatHandler:
    """Runs connection loops and the message / read-receipt pipeline.

    Args:
        manager: Connection registry shared by every connection.
        store: Message store; when None, persistence is skipped and read
            receipts are ignored.
        config: Chat tunables (queue size, timeouts, limits).
    """

    def __init__(
        self,
        manager: ConnectionManager,
        store: Optional[MessageStore] = None,
        config: Optional[ChatConfig] = None,
    ) -> None:
        self.manager = manager
        self.store = store
        self.config = config or ChatConfig()
        self.conversations = ConversationService(manager, store, self.config)
        # Strong references to in-flight event tasks
        self._tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def serve(self, websocket: WebSocket, user_id: str) -> None:
        """Drive one accepted WebSocket until it closes.

        Args:
            websocket: An already-accepted WebSocket.
            user_id: Authenticated identity for this connection.
        """
        connection = self.manager.add(user_id, websocket)
        logger.info(
            f"[WS] User {user_id} connected. {self.manager.online_count()} users online"
        )
        tasks: Tuple[asyncio.Task, ...] = ()
        try:
            await self._touch_presence(user_id, "connect")
            tasks = (
                asyncio.create_task(self._supervise(connection, self._read_loop(connection))),
                asyncio.create_task(self._supervise(connection, self._write_loop(connection))),
                asyncio.create_task(connection.done.wait()),
            )
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            connection.close()
            # Deregistration happens before any await in case serve is cancelled
            self.manager.remove(user_id, connection)
            for task in tasks:
                task.cancel()
            await asyncio.shield(self._drain(connection, tasks))

    async def _drain(self, connection: Connection, tasks: Tuple[asyncio.Task, ...]) -> None:
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._close_transport(connection)
        logger.info(
            f"[WS] User {connection.user_id} disconnected "
            f"(code={connection.close_code}, reason={connection.close_reason or 'n/a'})"
        )
        await self._touch_presence(connection.user_id, "disconnect")

    async def _close_transport(self, connection: Connection) -> None:
        websocket = connection.websocket
        if (websocket.application_state != WebSocketState.CONNECTED
                or websocket.client_state != WebSocketState.CONNECTED):
            return
        try:
            await websocket.close(code=connection.close_code, reason=connection.close_reason)
        except Exception as e:
            logger.debug(f"[WS] Close failed for user {connection.user_id}: {e}")

    def shutdown(self) -> None:
        """Close every live connection (application shutdown)."""
        self.manager.clear()

    # =========================================================================
    # Read / write loops
    # =========================================================================

    async def _supervise(self, connection: Connection, loop: Awaitable[None]) -> None:
        """Run one connection loop; a TransportError ends only this connection."""
        try:
            await loop
        except TransportError as e:
            logger.info(f"[WS] Transport error for user {connection.user_id}: {e.message}")
            connection.close(CLOSE_NORMAL, e.message)

    async def _read_loop(self, connection: Connection) -> None:
        websocket = connection.websocket
        inflight = asyncio.Semaphore(self.config.max_inflight_events)
        # Without app heartbeats a silent client is alive as long as it
        # answers uvicorn's protocol pings; a dead peer arrives as a disconnect.
        deadline = self.config.read_timeout_seconds if self.config.app_heartbeat else None

        while not connection.closed:
            try:
                # Every inbound frame (including heartbeats) renews the deadline
                frame = await asyncio.wait_for(websocket.receive(), timeout=deadline)
            except asyncio.TimeoutError:
                raise TransportError("liveness timeout")
            except RuntimeError as e:
                raise TransportError(f"read failed: {e}") from e

            if frame["type"] == "websocket.disconnect":
                logger.debug(
                    f"[WS] Client closed connection for user {connection.user_id} "
                    f"(code={frame.get('code')})"
                )
                return

            text = frame.get("text")
            if text is None and frame.get("bytes") is not None:
                try:
                    text = frame["bytes"].decode("utf-8")
                except UnicodeDecodeError:
                    text = None

            try:
                if text is None:
                    raise MessageValidationError("invalid message format")
                try:
                    raw = json.loads(text)
                except ValueError:
                    raise MessageValidationError("invalid message format")
                event = decode_event(raw)
            except MessageValidationError as e:
                self._reply(connection, ErrorResponse(error=e.message, code=e.code))
                continue

            if isinstance(event, Heartbeat):
                if event.event_type == PING_EVENT:
                    self._reply(connection, Heartbeat(event_type=PONG_EVENT))
                continue

            await inflight.acquire()
            task = asyncio.create_task(self._run_event(connection, event, inflight))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_event(
        self,
        connection: Connection,
        event: InboundEvent,
        inflight: asyncio.Semaphore,
    ) -> None:
        try:
            if isinstance(event, ReadReceipt):
                await self.process_read_receipt(connection, event)
            else:
                await self.process_message(connection, event)
        except Exception:
            logger.exception(f"[Chat] Unhandled error processing event for {connection.user_id}")
            self._reply(connection, ErrorResponse(error="internal error", code="internal_error"))
        finally:
            inflight.release()

    async def _write_loop(self, connection: Connection) -> None:
        websocket = connection.websocket
        loop = asyncio.get_running_loop()
        interval = self.config.ping_interval_seconds
        next_ping = loop.time() + interval

        while not connection.closed:
            if not self.config.app_heartbeat:
                payload: Any = await connection.outbound.get()
            else:
                try:
                    payload = await asyncio.wait_for(
                        connection.outbound.get(), timeout=max(0.0, next_ping - loop.time())
                    )
                except asyncio.TimeoutError:
                    payload = PING
                    next_ping = loop.time() + interval

            try:
                await asyncio.wait_for(
                    websocket.send_json(to_wire(payload)),
                    timeout=self.config.write_timeout_seconds,
                )
            except asyncio.TimeoutError:
                raise TransportError(
                    f"write timed out after {self.config.write_timeout_seconds}s"
                )
            except Exception as e:
                raise TransportError(f"write failed: {e}") from e

    # =========================================================================
    # Message pipeline
    # =========================================================================

    def validate_message(self, message: ChatMessage, sender_id: str) -> None:
        """Validate an inbound message before anything is persisted.

        Raises:
            MessageValidationError: On the first violated rule.
        """
        max_length = self.config.max_content_length
        if not message.content:
            raise MessageValidationError("message content cannot be empty")
        if len(message.content) > max_length:
            raise MessageValidationError(
                f"message content too long (max {max_length} characters)"
            )
        if not message.receiver_id:
            raise MessageValidationError("receiver_id is required")
        if message.receiver_id == sender_id:
            raise MessageValidationError("cannot send messages to yourself")

    async def process_message(
        self, connection: Connection, message: ChatMessage
    ) -> Optional[AckStatus]:
        """Validate, persist, deliver and acknowledge one message.

        Returns:
            The acknowledgement status sent to the sender, or None if the
            message failed validation (an ErrorResponse was sent instead).
        """
        sender_id = connection.user_id
        try:
            self.validate_message(message, sender_id)
        except MessageValidationError as e:
            self._reply(connection, ErrorResponse(error=e.message, code=e.code))
            return None

        # Never trust client-supplied sender or server-owned state
        message.sender_id = sender_id
        message.is_read = False
        message.store_id = None
        if not message.id:
            message.id = str(uuid.uuid4())
        if message.timestamp is None:
            message.timestamp = datetime.now(timezone.utc)

        if self.store is not None:
            try:
                message.store_id = await self._call_store(
                    self.store.save_message,
                    sender_id,
                    message.receiver_id,
                    message.content,
                    int(message.message_type),
                    int(message.timestamp.timestamp()),
                )
            except PersistenceError as e:
                logger.error(
                    f"[Chat] Persist failed for {sender_id} -> {message.receiver_id}: {e.message}"
                )
                self._reply(connection, Acknowledgement(
                    message_id=message.id,
                    status=AckStatus.ERROR,
                    error="failed to persist message",
                ))
                return AckStatus.ERROR

        status = AckStatus.QUEUED
        if self.manager.is_online(message.receiver_id):
            try:
                self.manager.send(message.receiver_id, message)
            except DeliveryError as e:
                logger.warning(f"[Chat] Delivery to {message.receiver_id} failed: {e.message}")
                self._reply(connection, Acknowledgement(
                    message_id=message.id,
                    status=AckStatus.ERROR,
                    error=f"failed to deliver message: {e.message}",
                    store_id=message.store_id,
                ))
                return AckStatus.ERROR
            status = AckStatus.SENT

        logger.debug(
            f"[Chat] {sender_id} -> {message.receiver_id} {status.value}: {message.content[:50]}"
        )
        self._reply(connection, Acknowledgement(
            message_id=message.id, status=status, store_id=message.store_id
        ))
        return status

    async def process_read_receipt(
        self, connection: Connection, receipt: ReadReceipt
    ) -> List[str]:
        """Mark messages read for the connection's identity and notify senders.

        Returns:
            Sender identities whose messages were actually marked read.
        """
        reader_id = connection.user_id
        if not receipt.message_ids:
            self._reply(connection, ErrorResponse(
                error="message_ids required for read receipt",
                code=MessageValidationError.code,
            ))
            return []
        if self.store is None:
            return []

        try:
            sender_ids = await self._call_store(
                self.store.mark_as_read, reader_id, list(receipt.message_ids)
            )
        except PersistenceError as e:
            logger.error(f"[Chat] Failed to mark messages as read for {reader_id}: {e.message}")
            self._reply(connection, ErrorResponse(
                error="failed to mark messages as read", code=e.code
            ))
            return []

        notification = ReadReceiptNotification(
            message_ids=receipt.message_ids, read_by=reader_id
        )
        for sender_id in sender_ids:
            # Receipts are never queued for offline senders
            if not self.manager.is_online(sender_id):
                continue
            try:
                self.manager.send(sender_id, notification)
            except DeliveryError as e:
                logger.warning(f"[Chat] Failed to send read receipt to {sender_id}: {e.message}")
        return sender_ids

    # =========================================================================
    # Helpers
    # =========================================================================

    def _reply(self, connection: Connection, payload: Any) -> bool:
        """Queue a payload for a connection's own client without blocking.

        A closed connection or a saturated queue drops the payload.
        """
        if connection.closed:
            return False
        try:
            connection.outbound.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(f"[Chat] Outbound queue full for user {connection.user_id}, reply dropped")
            return False
        return True

    async def _call_store(
        self, func: Callable[..., Any], *args: Any, timeout: Optional[float] = None
    ) -> Any:
        """Run a blocking store call in a worker thread, bounded by a timeout.

        Raises:
            PersistenceError: On store failure or timeout.
        """
        if timeout is None:
            timeout = self.config.persistence_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
        except asyncio.TimeoutError:
            raise PersistenceError(f"{func.__name__} timed out after {timeout}s")
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"{func.__name__} failed: {e}") from e

    async def _touch_presence(self, user_id: str, reason: str) -> None:
        if self.store is None:
            return
        try:
            await self._call_store(
                self.store.update_last_active,
                user_id,
                int(time.time()),
                timeout=self.config.presence_timeout_seconds,
            )
        except PersistenceError as e:
            logger.warning(f"[Chat] last_active_at update ({reason}) failed for {user_id}: {e.message}")


# =============================================================================
# Process-wide handler
# =============================================================================

_handler: Optional[ChatHandler] = None


def get_chat_handler() -> ChatHandler:
    """Return the global ChatHandler, building it from config on first use."""
    global _handler
    if _handler is None:
        config = get_config()
        store = DuckDBMessageStore.get_instance(config.database.path)
        _handler = ChatHandler(
            ConnectionManager(config.chat.outbound_queue_size), store, config.chat
        )
    return _handler


def set_chat_handler(handler: Optional[ChatHandler]) -> None:
    """Set (or clear) the global ChatHandler instance."""
    global _handler
    _handler = handler
