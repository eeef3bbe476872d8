"""DuckDB-backed relational store for chat state.

This module owns the single DuckDB connection used by every chat service.
The service implements the singleton pattern so that the whole process
shares one connection and one schema.

Database Schema:
    profiles:               read-only copy of user profiles (sender enrichment)
    sessions:               bearer token -> user id (session provider boundary)
    chat_rooms:             rooms; soft-deleted via deleted_at, never removed
    chat_room_participants: (room_id, user_id) with the read watermark
    chat_messages:          append-only log, ordered by (created_at, seq)
    chat_message_reads:     read receipts, (message_id, user_id)
    chat_typing_status:     ephemeral typing rows keyed by (room_id, user_id)

Thread Safety:
    The DuckDB connection is NOT thread-safe. Every statement runs under a
    re-entrant lock, and ``transaction()`` holds that lock for the whole
    unit of work, so concurrent appends into one room are serialised and
    both committed.

Usage:
    db = Database.get_instance(":memory:")
    rows = db.fetch_dicts("SELECT * FROM chat_rooms WHERE id = ?", [room_id])
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import duckdb

from roomcast.errors import UpstreamFailure

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id VARCHAR PRIMARY KEY,
        username VARCHAR NOT NULL,
        avatar_url VARCHAR,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        token VARCHAR PRIMARY KEY,
        user_id VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_rooms (
        id VARCHAR PRIMARY KEY,
        name VARCHAR,
        type VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_room_participants (
        room_id VARCHAR NOT NULL,
        user_id VARCHAR NOT NULL,
        joined_at TIMESTAMP NOT NULL,
        last_read_at TIMESTAMP,
        last_read_message_id VARCHAR,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (room_id, user_id)
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id VARCHAR PRIMARY KEY,
        seq BIGINT NOT NULL DEFAULT nextval('chat_messages_seq'),
        room_id VARCHAR NOT NULL,
        sender_id VARCHAR NOT NULL,
        content VARCHAR NOT NULL,
        message_type VARCHAR NOT NULL,
        file_url VARCHAR,
        file_name VARCHAR,
        file_size BIGINT,
        file_type VARCHAR,
        reply_to_id VARCHAR,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_room_created ON chat_messages(room_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS chat_message_reads (
        message_id VARCHAR NOT NULL,
        user_id VARCHAR NOT NULL,
        read_at TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_typing_status (
        room_id VARCHAR NOT NULL,
        user_id VARCHAR NOT NULL,
        is_typing BOOLEAN NOT NULL,
        last_activity TIMESTAMP NOT NULL,
        PRIMARY KEY (room_id, user_id)
    )
    """,
)


class Database:
    """Singleton wrapper around the DuckDB connection.

    Attributes:
        _instance: Singleton instance of the database.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["Database"] = None
    _db_path: str = "roomcast.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to DuckDB file. Defaults to "roomcast.duckdb".
                ":memory:" gives a private in-memory database.
        """
        if db_path:
            self._db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "Database":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and drop the singleton (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    @property
    def path(self) -> str:
        return self._db_path

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables, sequences and indexes (idempotent)."""
        with self._lock:
            conn = self._get_connection()
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        logger.info(f"Chat store ready at {self._db_path}")

    # =========================================================================
    # Statement helpers
    # =========================================================================

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        """Run a statement whose result is not needed."""
        with self._lock:
            try:
                self._get_connection().execute(sql, params or [])
            except duckdb.Error as e:
                raise UpstreamFailure(f"Store statement failed: {e}") from e

    def fetch_all(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[tuple]:
        with self._lock:
            try:
                return self._get_connection().execute(sql, params or []).fetchall()
            except duckdb.Error as e:
                raise UpstreamFailure(f"Store query failed: {e}") from e

    def fetch_one(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[tuple]:
        with self._lock:
            try:
                return self._get_connection().execute(sql, params or []).fetchone()
            except duckdb.Error as e:
                raise UpstreamFailure(f"Store query failed: {e}") from e

    def fetch_dicts(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """Run a query and return rows keyed by column name."""
        with self._lock:
            try:
                cursor = self._get_connection().execute(sql, params or [])
                columns = [column[0] for column in cursor.description]
                return [dict(zip(columns, row)) for row in cursor.fetchall()]
            except duckdb.Error as e:
                raise UpstreamFailure(f"Store query failed: {e}") from e

    def fetch_dict(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
        rows = self.fetch_dicts(sql, params)
        return rows[0] if rows else None

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Hold the connection lock and wrap the block in BEGIN/COMMIT."""
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN TRANSACTION")
            except duckdb.Error as e:
                raise UpstreamFailure(f"Could not open transaction: {e}") from e
            try:
                yield self
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            try:
                conn.execute("COMMIT")
            except duckdb.Error as e:
                raise UpstreamFailure(f"Commit failed: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def placeholders(count: int) -> str:
    """Return ``?, ?, ?`` for an IN clause of *count* values."""
    return ", ".join("?" for _ in range(count))
