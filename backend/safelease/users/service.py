"""DuckDB-backed user directory.

The chat layer only reads user records: it needs a display name and avatar
for every message sender. Records are written by the account side of
SafeLease (registration, profile editing) or seeded by tooling through
``upsert_user``.
"""
import logging
from typing import Optional

import duckdb

from safelease.chat.errors import StoreUnavailable
from safelease.chat.schemas import SenderSummary

logger = logging.getLogger(__name__)


class UserDirectory:
    """Singleton lookup of user display identities."""

    _instance: Optional["UserDirectory"] = None
    _db_path: str = "safelease_chat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "UserDirectory":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        self._get_connection().execute("""
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL,
                profile_pic VARCHAR
            )
        """)

    def upsert_user(
        self, user_id: str, name: str, profile_pic: Optional[str] = None
    ) -> SenderSummary:
        """Create or replace a user record."""
        conn = self._get_connection()
        conn.execute("DELETE FROM users WHERE id = ?", [user_id])
        conn.execute(
            "INSERT INTO users (id, name, profile_pic) VALUES (?, ?, ?)",
            [user_id, name, profile_pic],
        )
        logger.debug(f"[Users] Upserted user {user_id}")
        return SenderSummary(id=user_id, displayName=name, profilePic=profile_pic)

    def get_summary(self, user_id: str) -> Optional[SenderSummary]:
        """Look up a user's public identity.

        Returns:
            SenderSummary if the user exists, None otherwise.

        Raises:
            StoreUnavailable: If the database query fails.
        """
        try:
            row = self._get_connection().execute(
                "SELECT id, name, profile_pic FROM users WHERE id = ?",
                [user_id],
            ).fetchone()
        except duckdb.Error as e:
            logger.error(f"[Users] Lookup of {user_id} failed: {e}")
            raise StoreUnavailable("User directory is unavailable.") from e

        if row is None:
            return None
        return SenderSummary(id=row[0], displayName=row[1], profilePic=row[2])

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
