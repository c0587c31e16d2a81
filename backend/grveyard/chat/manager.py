"""Connection registry for real-time direct messaging.

This module owns the live mapping from user identity to the single active
WebSocket connection for that identity.  It is the only shared mutable
structure in the chat subsystem.

Key features:
    - At most one connection per identity (a reconnect supersedes the old one)
    - Bounded per-connection outbound queue (the only hand-off to the write loop)
    - Idempotent done signal observed by both connection loops
    - Non-blocking sends with distinct NotOnline / Disconnected / QueueFull outcomes

Thread Safety:
    The identity map is guarded by a single ``threading.Lock`` so that sync
    FastAPI endpoints running in the thread pool can read presence safely.
    No operation awaits or performs network I/O while holding the lock.
    Outbound queues and done signals are asyncio primitives and must only be
    touched from the event loop.
"""
import asyncio
import logging
import threading
import time
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from .errors import DisconnectedError, NotOnlineError, QueueFullError

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Default capacity of each connection's outbound queue
DEFAULT_OUTBOUND_QUEUE_SIZE = 32

# Application close codes (4000-4999 are reserved for private use)
CLOSE_NORMAL = 1000
CLOSE_SUPERSEDED = 4000


# =============================================================================
# Connection
# =============================================================================


class Connection:
    """One live transport session bound to exactly one identity.

    Attributes:
        user_id: Identity this connection is authenticated as.
        websocket: The underlying transport.
        outbound: Bounded queue drained by the write loop.
        done: Set once when the connection must stop; never cleared.
        connected_at: Epoch seconds when the connection was registered.
        close_code: WebSocket close code used when the transport is closed.
        close_reason: Human-readable close reason.
    """

    def __init__(
        self,
        user_id: str,
        websocket: WebSocket,
        queue_size: int = DEFAULT_OUTBOUND_QUEUE_SIZE,
    ) -> None:
        self.user_id = user_id
        self.websocket = websocket
        self.outbound: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=queue_size)
        self.done = asyncio.Event()
        self.connected_at = int(time.time())
        self.close_code = CLOSE_NORMAL
        self.close_reason = ""

    @property
    def closed(self) -> bool:
        return self.done.is_set()

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> bool:
        """Signal both loops to stop.

        Returns:
            True if this call closed the connection, False if it was already closed.
        """
        if self.done.is_set():
            return False
        self.close_code = code
        self.close_reason = reason
        self.done.set()
        return True

    def __repr__(self) -> str:
        return f"<Connection user_id={self.user_id} closed={self.closed}>"


# =============================================================================
# Connection Manager
# =============================================================================


class ConnectionManager:
    """Single source of truth for which identities are reachable right now.

    The registry is the sole owner of Connection lifetime: callers get
    Connection handles but never the underlying map.
    """

    def __init__(self, queue_size: int = DEFAULT_OUTBOUND_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._lock = threading.Lock()
        # user_id -> active Connection
        self._connections: Dict[str, Connection] = {}

    def add(self, user_id: str, websocket: WebSocket) -> Connection:
        """Register a connection, superseding any existing one for the identity.

        The previous connection's done signal is closed before the new one is
        installed; its loops observe the signal and close the transport on
        their own, so this call never waits for the old teardown.

        Args:
            user_id: Authenticated identity.
            websocket: Accepted transport for the new connection.

        Returns:
            The newly registered Connection.
        """
        connection = Connection(user_id, websocket, self._queue_size)
        with self._lock:
            existing = self._connections.get(user_id)
            if existing is not None:
                existing.close(CLOSE_SUPERSEDED, "superseded by a newer connection")
            self._connections[user_id] = connection

        if existing is not None:
            logger.info(f"[Chat] Superseded existing connection for user {user_id}")
        return connection

    def remove(self, user_id: str, connection: Optional[Connection] = None) -> bool:
        """Deregister an identity and signal its connection done.

        Idempotent.  When ``connection`` is given the entry is only removed
        if it is still that connection, so the teardown of a superseded
        connection never evicts its successor.

        Returns:
            True if an entry was removed.
        """
        with self._lock:
            current = self._connections.get(user_id)
            if current is None:
                return False
            if connection is not None and current is not connection:
                return False
            del self._connections[user_id]
        current.close()
        return True

    def get(self, user_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(user_id)

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._connections

    def list_online(self) -> Set[str]:
        """Snapshot of currently registered identities."""
        with self._lock:
            return set(self._connections)

    def online_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def send(self, user_id: str, payload: Any) -> None:
        """Hand a payload to a connection's outbound queue without blocking.

        Raises:
            NotOnlineError: No connection is registered for the identity.
            DisconnectedError: The connection closed before the hand-off.
            QueueFullError: The outbound queue is saturated.
        """
        with self._lock:
            connection = self._connections.get(user_id)

        if connection is None:
            raise NotOnlineError(user_id)
        if connection.closed:
            raise DisconnectedError(user_id)
        try:
            connection.outbound.put_nowait(payload)
        except asyncio.QueueFull:
            raise QueueFullError(user_id)

    def clear(self) -> None:
        """Close and forget every connection (shutdown and tests)."""
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.close()
