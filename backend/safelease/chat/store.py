"""DuckDB-based chat message store.

Append-only log of chat messages partitioned by conversation key. The service
implements the singleton pattern to ensure only one database connection
exists at a time.

Database Schema:
    chat_messages table:
        - id: Sequence number assigned on append (increases in append order)
        - conversation_key: Conversation the message belongs to
        - sender_id: User ID of the sender
        - content: Trimmed message text
        - timestamp: When the message was appended (UTC)
        - read: Kept for storage compatibility, never updated

Ordering:
    Messages are read back ordered by (timestamp, id). Timestamps are clamped
    so that a new message is never older than the newest message already in
    its conversation, even if the wall clock steps backwards.

Usage:
    store = MessageStore.get_instance()
    message = store.append(key, sender_id, "hello")
    history = store.list_by_conversation(key)
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from .errors import EmptyContent, StoreUnavailable
from .schemas import StoredMessage

logger = logging.getLogger(__name__)


class MessageStore:
    """Singleton service persisting chat messages in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "safelease_chat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the message store.

        Creates the database file and schema if they don't exist.

        Args:
            db_path: Path to DuckDB file. Defaults to "safelease_chat.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and drop the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1;
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                id BIGINT PRIMARY KEY,
                conversation_key VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                content VARCHAR NOT NULL,
                timestamp TIMESTAMP NOT NULL,
                read BOOLEAN NOT NULL DEFAULT FALSE
            )
        """)

    def append(self, conversation_key: str, sender_id: str, content: str) -> StoredMessage:
        """Append a message to a conversation.

        Args:
            conversation_key: Conversation to append to.
            sender_id: Authenticated sender's user ID.
            content: Message text; surrounding whitespace is stripped.

        Returns:
            The stored message with its assigned id and timestamp.

        Raises:
            EmptyContent: If content is empty after trimming.
            StoreUnavailable: If the database operation fails.
        """
        content = (content or "").strip()
        if not content:
            raise EmptyContent()

        try:
            conn = self._get_connection()
            latest = conn.execute(
                "SELECT max(timestamp) FROM chat_messages WHERE conversation_key = ?",
                [conversation_key],
            ).fetchone()[0]
            timestamp = datetime.now(timezone.utc).replace(tzinfo=None)
            if latest is not None and latest > timestamp:
                timestamp = latest

            message_id = conn.execute("SELECT nextval('chat_messages_seq')").fetchone()[0]
            conn.execute(
                """
                INSERT INTO chat_messages (id, conversation_key, sender_id, content, timestamp, read)
                VALUES (?, ?, ?, ?, ?, FALSE)
                """,
                [message_id, conversation_key, sender_id, content, timestamp],
            )
        except duckdb.Error as e:
            logger.error(f"[Store] Append to {conversation_key} failed: {e}")
            raise StoreUnavailable() from e

        return StoredMessage(
            id=message_id,
            conversationKey=conversation_key,
            senderId=sender_id,
            content=content,
            timestamp=timestamp.replace(tzinfo=timezone.utc),
        )

    def list_by_conversation(self, conversation_key: str) -> List[StoredMessage]:
        """Return every message of a conversation, oldest first.

        Raises:
            StoreUnavailable: If the database query fails.
        """
        try:
            rows = self._get_connection().execute(
                """
                SELECT id, conversation_key, sender_id, content, timestamp, read
                FROM chat_messages
                WHERE conversation_key = ?
                ORDER BY timestamp ASC, id ASC
                """,
                [conversation_key],
            ).fetchall()
        except duckdb.Error as e:
            logger.error(f"[Store] History read for {conversation_key} failed: {e}")
            raise StoreUnavailable() from e

        return [
            StoredMessage(
                id=row[0],
                conversationKey=row[1],
                senderId=row[2],
                content=row[3],
                timestamp=row[4].replace(tzinfo=timezone.utc),
                read=row[5],
            )
            for row in rows
        ]

    def count(self, conversation_key: str) -> int:
        """Number of messages stored for a conversation.

        Raises:
            StoreUnavailable: If the database query fails.
        """
        try:
            return self._get_connection().execute(
                "SELECT count(*) FROM chat_messages WHERE conversation_key = ?",
                [conversation_key],
            ).fetchone()[0]
        except duckdb.Error as e:
            logger.error(f"[Store] Count for {conversation_key} failed: {e}")
            raise StoreUnavailable() from e

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
