"""Message store gateway and its DuckDB implementation.

The chat subsystem only depends on the narrow :class:`MessageStore`
contract (save, presence update, mark-as-read, history).  The default
implementation keeps everything in an embedded DuckDB database.

Database Schema:
    messages table:
        - id: Auto-incrementing primary key (the "store id")
        - sender_id / receiver_id: User identities (CHECK sender <> receiver)
        - content: Message body
        - message_type: 0=text, 1=image, 2=file, 3=system
        - is_read: Set once by the receiver
        - messaged_at: Epoch seconds

    user_presence table:
        - user_id: Identity (primary key)
        - last_active_at: Epoch seconds of the last connect/disconnect

Thread Safety:
    A single DuckDB connection is shared and every statement runs under
    ``_lock``.  Callers on the event loop reach the store through
    ``asyncio.to_thread`` so that blocking queries never stall the loop.

Usage:
    store = DuckDBMessageStore.get_instance()
    store_id = store.save_message(sender, receiver, "hi", 0, 1700000000)
    records = store.get_history(sender, receiver, limit=50, before_epoch=now)
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import duckdb

from grveyard.chat.errors import PersistenceError

from .schemas import MessageRecord

logger = logging.getLogger(__name__)

# Default and maximum page size for history queries
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 100


def clamp_limit(limit: Optional[int]) -> int:
    """Apply the history page-size rules (<=0 -> default, capped at max)."""
    if limit is None or limit <= 0:
        return DEFAULT_HISTORY_LIMIT
    return min(limit, MAX_HISTORY_LIMIT)


class MessageStore(ABC):
    """Persistence contract consumed by the chat subsystem.

    Implementations must be thread-safe: the handler calls them from
    worker threads via ``asyncio.to_thread``.  Failures are raised as
    :class:`PersistenceError`.
    """

    @abstractmethod
    def save_message(
        self,
        sender_id: str,
        receiver_id: str,
        content: str,
        message_type: int,
        messaged_at: int,
    ) -> int:
        """Persist a message and return its store id."""

    @abstractmethod
    def update_last_active(self, user_id: str, last_active_epoch: int) -> None:
        """Record the last time an identity connected or disconnected."""

    @abstractmethod
    def mark_as_read(self, receiver_id: str, message_ids: Sequence[str]) -> List[str]:
        """Mark messages read where ``receiver_id`` is the actual receiver.

        Ids that are not integers, belong to other receivers or are already
        read are silently skipped.

        Returns:
            Distinct sender identities whose messages were updated.
        """

    @abstractmethod
    def get_history(
        self,
        user_id: str,
        peer_id: str,
        limit: int,
        before_epoch: int,
    ) -> List[MessageRecord]:
        """Return the newest ``limit`` messages of the pair strictly before
        ``before_epoch``, oldest first."""

    def close(self) -> None:
        """Release any held resources."""


class DuckDBMessageStore(MessageStore):
    """Singleton message store backed by DuckDB.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["DuckDBMessageStore"] = None
    _db_path: str = "grveyard.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:". Defaults to "grveyard.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "DuckDBMessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton instance (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create sequence and tables. Idempotent."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1;")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id BIGINT DEFAULT nextval('messages_seq') PRIMARY KEY,
                    sender_id VARCHAR NOT NULL,
                    receiver_id VARCHAR NOT NULL,
                    content VARCHAR NOT NULL,
                    message_type SMALLINT NOT NULL DEFAULT 0,
                    is_read BOOLEAN NOT NULL DEFAULT FALSE,
                    messaged_at BIGINT NOT NULL,
                    CHECK (sender_id <> receiver_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_presence (
                    user_id VARCHAR PRIMARY KEY,
                    last_active_at BIGINT NOT NULL
                )
            """)

    def save_message(
        self,
        sender_id: str,
        receiver_id: str,
        content: str,
        message_type: int,
        messaged_at: int,
    ) -> int:
        try:
            with self._lock:
                row = self._get_connection().execute(
                    """
                    INSERT INTO messages (sender_id, receiver_id, content, message_type, is_read, messaged_at)
                    VALUES (?, ?, ?, ?, FALSE, ?)
                    RETURNING id
                    """,
                    [sender_id, receiver_id, content, int(message_type), messaged_at],
                ).fetchone()
        except duckdb.Error as e:
            raise PersistenceError(f"insert message: {e}") from e
        return int(row[0])

    def update_last_active(self, user_id: str, last_active_epoch: int) -> None:
        try:
            with self._lock:
                self._get_connection().execute(
                    """
                    INSERT INTO user_presence (user_id, last_active_at)
                    VALUES (?, ?)
                    ON CONFLICT (user_id) DO UPDATE SET last_active_at = excluded.last_active_at
                    """,
                    [user_id, last_active_epoch],
                )
        except duckdb.Error as e:
            raise PersistenceError(f"update last_active_at: {e}") from e

    def get_last_active(self, user_id: str) -> Optional[int]:
        """Return the recorded last-active epoch for an identity, if any."""
        try:
            with self._lock:
                row = self._get_connection().execute(
                    "SELECT last_active_at FROM user_presence WHERE user_id = ?",
                    [user_id],
                ).fetchone()
        except duckdb.Error as e:
            raise PersistenceError(f"query last_active_at: {e}") from e
        return int(row[0]) if row else None

    def mark_as_read(self, receiver_id: str, message_ids: Sequence[str]) -> List[str]:
        ids = []
        for raw_id in message_ids:
            try:
                ids.append(int(str(raw_id).strip()))
            except ValueError:
                continue
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        try:
            with self._lock:
                conn = self._get_connection()
                # Select-then-update is atomic here because the lock serialises all writers
                rows = conn.execute(
                    f"""
                    SELECT id, sender_id
                    FROM messages
                    WHERE receiver_id = ?
                      AND id IN ({placeholders})
                      AND is_read = FALSE
                    ORDER BY id
                    """,
                    [receiver_id, *ids],
                ).fetchall()
                if rows:
                    matched = [row[0] for row in rows]
                    conn.execute(
                        f"UPDATE messages SET is_read = TRUE WHERE id IN ({', '.join('?' for _ in matched)})",
                        matched,
                    )
        except duckdb.Error as e:
            raise PersistenceError(f"mark messages as read: {e}") from e

        senders: List[str] = []
        for _, sender_id in rows:
            if sender_id not in senders:
                senders.append(sender_id)
        return senders

    def get_history(
        self,
        user_id: str,
        peer_id: str,
        limit: int,
        before_epoch: int,
    ) -> List[MessageRecord]:
        limit = clamp_limit(limit)
        try:
            with self._lock:
                rows = self._get_connection().execute(
                    """
                    SELECT id, sender_id, receiver_id, content, message_type, is_read, messaged_at
                    FROM messages
                    WHERE ((sender_id = ? AND receiver_id = ?)
                        OR (sender_id = ? AND receiver_id = ?))
                      AND messaged_at < ?
                    ORDER BY messaged_at DESC, id DESC
                    LIMIT ?
                    """,
                    [user_id, peer_id, peer_id, user_id, before_epoch, limit],
                ).fetchall()
        except duckdb.Error as e:
            raise PersistenceError(f"query conversation history: {e}") from e

        # Newest page was selected; hand it back oldest first
        return [
            MessageRecord(
                id=row[0],
                sender_id=row[1],
                receiver_id=row[2],
                content=row[3],
                message_type=row[4],
                is_read=row[5],
                messaged_at=row[6],
            )
            for row in reversed(rows)
        ]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
