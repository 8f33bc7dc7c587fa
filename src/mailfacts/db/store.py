"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for mailfacts. It uses aiosqlite for async access and returns
dataclasses rather than raw rows.

All timestamps are written as ISO-8601 UTC strings with second precision.
Range filters compare the first 19 characters (``YYYY-MM-DDTHH:MM:SS``) so a
closed upper bound such as ``23:59:59`` covers that whole second.

Usage:
    from mailfacts.db.store import DatabaseStore

    store = DatabaseStore("data/mailfacts.db")
    await store.initialize()

    if await store.try_begin_sync("user-1"):
        ...
        await store.finish_sync("user-1", status="idle", cursor="98765")
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from mailfacts.core.errors import DatabaseError
from mailfacts.core.logging import get_logger, get_run_id
from mailfacts.db.models import init_database

logger = get_logger(__name__)

# Hard cap for the processing_error column
MAX_PROCESSING_ERROR_LENGTH = 512

SyncStatus = Literal["idle", "syncing", "error"]


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime as an ISO-8601 UTC string. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="seconds")


def _bound(value: datetime) -> str:
    """Format a range bound for comparison against substr(column, 1, 19)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S")


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _like_pattern(term: str) -> str:
    """Build a LIKE substring pattern with wildcards in ``term`` escaped."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@dataclass
class User:
    """User record: credentials and sync state for one mailbox."""

    id: str
    email: str | None = None
    access_token_enc: str = ""
    refresh_token_enc: str = ""
    token_expires_at: datetime | None = None
    history_cursor: str = ""
    last_synced_at: datetime | None = None
    sync_status: SyncStatus = "idle"
    created_at: datetime | None = None


@dataclass
class Message:
    """Normalized mailbox message."""

    user_id: str
    provider_message_id: str
    id: int | None = None
    thread_id: str | None = None
    history_id: str | None = None
    sender: str = ""
    recipient: str = ""
    subject: str = ""
    body: str = ""
    snippet: str = ""
    timestamp: datetime | None = None
    labels: list[str] = field(default_factory=list)
    has_attachments: bool = False
    size_estimate: int = 0
    processed: bool = False
    processing_error: str = ""
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serializable view used in query results (body omitted)."""
        return {
            "id": self.id,
            "provider_message_id": self.provider_message_id,
            "thread_id": self.thread_id,
            "sender": self.sender,
            "recipient": self.recipient,
            "subject": self.subject,
            "snippet": self.snippet,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "labels": self.labels,
            "has_attachments": self.has_attachments,
        }


@dataclass
class Fact:
    """A typed, confidence-scored value extracted from one message."""

    type: str
    value: str
    user_id: str = ""
    message_id: int | None = None
    confidence: float = 0.5
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "type": self.type,
            "value": self.value,
            "confidence": self.confidence,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DatabaseStore:
    """Database store for all mailfacts data.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets the PRAGMAs needed when the scheduler and the web API write
        concurrently:
        - busy_timeout: 10s
        - foreign_keys: ON
        - synchronous: NORMAL (safe with WAL)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # User Operations
    # =========================================================================

    async def upsert_user(
        self,
        user_id: str,
        email: str | None = None,
        access_token_enc: str = "",
        refresh_token_enc: str = "",
        token_expires_at: datetime | None = None,
    ) -> User:
        """Create a user, or replace the credentials of an existing one.

        Sync state (cursor, status, last sync) of an existing user is kept.

        Raises:
            DatabaseError: If the operation fails
        """
        now = to_db_timestamp(datetime.now(UTC))
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO users (
                        id, email, access_token_enc, refresh_token_enc,
                        token_expires_at, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        email = COALESCE(excluded.email, users.email),
                        access_token_enc = excluded.access_token_enc,
                        refresh_token_enc = excluded.refresh_token_enc,
                        token_expires_at = excluded.token_expires_at
                    """,
                    (
                        user_id,
                        email,
                        access_token_enc,
                        refresh_token_enc,
                        to_db_timestamp(token_expires_at) if token_expires_at else None,
                        now,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("user_upsert_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to save user {user_id}: {e}") from e

        user = await self.get_user(user_id)
        if user is None:
            raise DatabaseError(f"User {user_id} missing immediately after upsert")
        return user

    async def get_user(self, user_id: str) -> User | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
                row = await cursor.fetchone()
                return self._row_to_user(row) if row else None
        except aiosqlite.Error as e:
            logger.error("user_get_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get user {user_id}: {e}") from e

    async def list_users(self) -> list[User]:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM users ORDER BY created_at, id")
                return [self._row_to_user(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("user_list_failed", error=str(e))
            raise DatabaseError(f"Failed to list users: {e}") from e

    async def update_tokens(
        self,
        user_id: str,
        access_token_enc: str,
        token_expires_at: datetime,
    ) -> None:
        """Persist a refreshed (encrypted) access token and its expiry."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE users SET access_token_enc = ?, token_expires_at = ? WHERE id = ?",
                    (access_token_enc, to_db_timestamp(token_expires_at), user_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("token_update_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to update tokens for {user_id}: {e}") from e

    async def try_begin_sync(self, user_id: str) -> bool:
        """Atomically move a user from idle/error to syncing.

        The conditional UPDATE is a compare-and-set: of two concurrent callers
        for the same user exactly one sees rowcount 1.

        Returns:
            True if this caller now holds the sync lock, False if a sync is
            already running (or the user doesn't exist)
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE users SET sync_status = 'syncing'
                    WHERE id = ? AND sync_status != 'syncing'
                    """,
                    (user_id,),
                )
                await db.commit()
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            logger.error("sync_lock_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to acquire sync lock for {user_id}: {e}") from e

    async def finish_sync(
        self,
        user_id: str,
        status: Literal["idle", "error"],
        cursor: str = "",
    ) -> None:
        """Release the sync lock.

        Sets ``sync_status`` and ``last_synced_at = now``. The cursor is only
        written when non-empty so an empty value never erases a known cursor.
        """
        now = to_db_timestamp(datetime.now(UTC))
        try:
            async with self._db() as db:
                if cursor:
                    await db.execute(
                        """
                        UPDATE users
                        SET sync_status = ?, last_synced_at = ?, history_cursor = ?
                        WHERE id = ?
                        """,
                        (status, now, cursor, user_id),
                    )
                else:
                    await db.execute(
                        "UPDATE users SET sync_status = ?, last_synced_at = ? WHERE id = ?",
                        (status, now, user_id),
                    )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("sync_unlock_failed", user_id=user_id, status=status, error=str(e))
            raise DatabaseError(f"Failed to release sync lock for {user_id}: {e}") from e

    async def reset_sync_status(self, user_id: str) -> bool:
        """Operator recovery: force a user stuck in 'syncing' back to 'idle'."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE users SET sync_status = 'idle' "
                    "WHERE id = ? AND sync_status = 'syncing'",
                    (user_id,),
                )
                await db.commit()
                reset = cursor.rowcount == 1
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to reset sync status for {user_id}: {e}") from e

        if reset:
            logger.warning("sync_status_reset", user_id=user_id)
        return reset

    def _row_to_user(self, row: aiosqlite.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            access_token_enc=row["access_token_enc"] or "",
            refresh_token_enc=row["refresh_token_enc"] or "",
            token_expires_at=_parse_timestamp(row["token_expires_at"]),
            history_cursor=row["history_cursor"] or "",
            last_synced_at=_parse_timestamp(row["last_synced_at"]),
            sync_status=row["sync_status"],
            created_at=_parse_timestamp(row["created_at"]),
        )

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def insert_message(self, message: Message) -> bool:
        """Insert a message unless its (user_id, provider_message_id) already exists.

        Existing rows are never overwritten.

        Returns:
            True if a new row was inserted, False if it was a duplicate

        Raises:
            DatabaseError: If the operation fails
        """
        created_at = message.created_at or datetime.now(UTC)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO messages (
                        user_id, provider_message_id, thread_id, history_id,
                        sender, recipient, subject, body, snippet, timestamp,
                        labels, has_attachments, size_estimate,
                        processed, processing_error, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, '', ?)
                    """,
                    (
                        message.user_id,
                        message.provider_message_id,
                        message.thread_id,
                        message.history_id,
                        message.sender,
                        message.recipient,
                        message.subject,
                        message.body,
                        message.snippet,
                        to_db_timestamp(message.timestamp) if message.timestamp else None,
                        json.dumps(message.labels),
                        1 if message.has_attachments else 0,
                        message.size_estimate,
                        to_db_timestamp(created_at),
                    ),
                )
                await db.commit()
                inserted = cursor.rowcount == 1
                row_id = cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error(
                "message_insert_failed",
                provider_message_id=message.provider_message_id[:16],
                error=str(e),
            )
            raise DatabaseError(
                f"Failed to insert message {message.provider_message_id}: {e}"
            ) from e

        if inserted:
            message.id = row_id
            message.created_at = created_at
        return inserted

    async def message_exists(self, user_id: str, provider_message_id: str) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT 1 FROM messages WHERE user_id = ? AND provider_message_id = ?",
                    (user_id, provider_message_id),
                )
                return await cursor.fetchone() is not None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to check message {provider_message_id}: {e}") from e

    async def get_message(self, message_id: int) -> Message | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
                row = await cursor.fetchone()
                return self._row_to_message(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get message {message_id}: {e}") from e

    async def get_message_by_provider_id(
        self, user_id: str, provider_message_id: str
    ) -> Message | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM messages WHERE user_id = ? AND provider_message_id = ?",
                    (user_id, provider_message_id),
                )
                row = await cursor.fetchone()
                return self._row_to_message(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get message {provider_message_id}: {e}") from e

    async def get_unprocessed_messages(self, limit: int) -> list[Message]:
        """Select the extraction queue head: unprocessed, error-free, oldest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM messages
                    WHERE processed = 0 AND processing_error = ''
                    ORDER BY created_at ASC, id ASC
                    LIMIT ?
                    """,
                    (limit,),
                )
                return [self._row_to_message(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("unprocessed_query_failed", error=str(e))
            raise DatabaseError(f"Failed to get unprocessed messages: {e}") from e

    async def save_facts_and_mark_processed(self, message: Message, facts: Sequence[Fact]) -> int:
        """Insert all facts for a message and mark it processed, in one transaction.

        Returns:
            Number of facts inserted
        """
        if message.id is None:
            raise DatabaseError("Cannot save facts for a message without an id")

        now = datetime.now(UTC)
        rows = [
            (
                message.user_id,
                message.id,
                fact.type,
                fact.value,
                fact.confidence,
                json.dumps(fact.metadata),
                to_db_timestamp(fact.created_at or now),
            )
            for fact in facts
        ]
        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT INTO facts (
                        user_id, message_id, type, value, confidence, metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                await db.execute("UPDATE messages SET processed = 1 WHERE id = ?", (message.id,))
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("fact_save_failed", message_id=message.id, error=str(e))
            raise DatabaseError(f"Failed to save facts for message {message.id}: {e}") from e

        return len(rows)

    async def mark_processing_error(self, message_id: int, error: str) -> None:
        """Record a terminal extraction failure (truncated to 512 characters)."""
        error_text = (error or "unknown error")[:MAX_PROCESSING_ERROR_LENGTH]
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE messages SET processing_error = ? WHERE id = ?",
                    (error_text, message_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to mark error on message {message_id}: {e}") from e

    async def clear_processing_errors(self, user_id: str | None = None) -> int:
        """Operator recovery: re-queue messages whose extraction failed.

        Returns:
            Number of messages re-queued
        """
        query = "UPDATE messages SET processing_error = '' WHERE processing_error != ''"
        params: list[Any] = []
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                await db.commit()
                cleared = cursor.rowcount
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to clear processing errors: {e}") from e

        logger.info("processing_errors_cleared", user_id=user_id, count=cleared)
        return cleared

    async def query_messages(
        self,
        user_id: str,
        subject_terms: Sequence[str] = (),
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int = 20,
    ) -> tuple[list[Message], int]:
        """Filtered read over a user's messages, newest first.

        Returns:
            (page of messages, total number of matching rows)
        """
        where = ["user_id = ?"]
        params: list[Any] = [user_id]
        for term in subject_terms:
            where.append("subject LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(term))
        if date_from is not None:
            where.append("substr(timestamp, 1, 19) >= ?")
            params.append(_bound(date_from))
        if date_to is not None:
            where.append("substr(timestamp, 1, 19) <= ?")
            params.append(_bound(date_to))
        clause = " AND ".join(where)

        try:
            async with self._db() as db:
                cursor = await db.execute(f"SELECT COUNT(*) FROM messages WHERE {clause}", params)
                total = (await cursor.fetchone())[0]
                cursor = await db.execute(
                    f"SELECT * FROM messages WHERE {clause} "
                    "ORDER BY timestamp DESC, id DESC LIMIT ?",
                    [*params, limit],
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("message_query_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to query messages: {e}") from e

        return [self._row_to_message(row) for row in rows], total

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        labels: list[str] = []
        if row["labels"]:
            try:
                labels = json.loads(row["labels"])
            except json.JSONDecodeError:
                labels = []

        return Message(
            id=row["id"],
            user_id=row["user_id"],
            provider_message_id=row["provider_message_id"],
            thread_id=row["thread_id"],
            history_id=row["history_id"],
            sender=row["sender"] or "",
            recipient=row["recipient"] or "",
            subject=row["subject"] or "",
            body=row["body"] or "",
            snippet=row["snippet"] or "",
            timestamp=_parse_timestamp(row["timestamp"]),
            labels=labels,
            has_attachments=bool(row["has_attachments"]),
            size_estimate=row["size_estimate"] or 0,
            processed=bool(row["processed"]),
            processing_error=row["processing_error"] or "",
            created_at=_parse_timestamp(row["created_at"]),
        )

    # =========================================================================
    # Fact Operations
    # =========================================================================

    async def get_facts_for_message(self, message_id: int) -> list[Fact]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM facts WHERE message_id = ? ORDER BY id",
                    (message_id,),
                )
                return [self._row_to_fact(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get facts for message {message_id}: {e}") from e

    async def query_facts(
        self,
        user_id: str,
        fact_type: str | None = None,
        value_terms: Sequence[str] = (),
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        min_confidence: float = 0.4,
        limit: int = 20,
    ) -> tuple[list[Fact], int]:
        """Filtered read over a user's facts, newest first.

        Confidence must be strictly greater than ``min_confidence``. Each entry
        of ``value_terms`` adds an independent substring match on ``value``.
        Date bounds are a closed interval on ``created_at``.

        Returns:
            (page of facts, total number of matching rows)
        """
        where = ["user_id = ?", "confidence > ?"]
        params: list[Any] = [user_id, min_confidence]
        if fact_type:
            where.append("type = ?")
            params.append(fact_type)
        for term in value_terms:
            where.append("value LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(term))
        if date_from is not None:
            where.append("substr(created_at, 1, 19) >= ?")
            params.append(_bound(date_from))
        if date_to is not None:
            where.append("substr(created_at, 1, 19) <= ?")
            params.append(_bound(date_to))
        clause = " AND ".join(where)

        try:
            async with self._db() as db:
                cursor = await db.execute(f"SELECT COUNT(*) FROM facts WHERE {clause}", params)
                total = (await cursor.fetchone())[0]
                cursor = await db.execute(
                    f"SELECT * FROM facts WHERE {clause} "
                    "ORDER BY created_at DESC, id DESC LIMIT ?",
                    [*params, limit],
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("fact_query_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to query facts: {e}") from e

        return [self._row_to_fact(row) for row in rows], total

    def _row_to_fact(self, row: aiosqlite.Row) -> Fact:
        metadata: dict[str, Any] = {}
        if row["metadata"]:
            try:
                metadata = json.loads(row["metadata"])
            except json.JSONDecodeError:
                pass

        return Fact(
            id=row["id"],
            user_id=row["user_id"],
            message_id=row["message_id"],
            type=row["type"],
            value=row["value"],
            confidence=row["confidence"],
            metadata=metadata,
            created_at=_parse_timestamp(row["created_at"]),
        )

    # =========================================================================
    # LLM Request Log
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]] | None,
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        message_id: int | None = None,
        error: str | None = None,
    ) -> int:
        """Log an LLM request for debugging.

        Args:
            task_type: 'extraction', 'intent' or 'answer'
            prompt: The messages sent to Claude (None when prompt logging is off)
            tool_call: Extracted tool call input (if applicable)

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        timestamp, task_type, model, message_id, run_id,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        to_db_timestamp(datetime.now(UTC)),
                        task_type,
                        model,
                        message_id,
                        get_run_id(),
                        json.dumps(prompt) if prompt else None,
                        json.dumps(response) if response else None,
                        json.dumps(tool_call) if tool_call else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("llm_log_failed", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM logs older than the retention period.

        Returns:
            Number of entries deleted
        """
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM llm_request_log WHERE substr(timestamp, 1, 19) < ?",
                    (_bound(cutoff),),
                )
                await db.commit()
                deleted = cursor.rowcount
        except aiosqlite.Error as e:
            logger.error("llm_log_prune_failed", error=str(e))
            raise DatabaseError(f"Failed to prune LLM logs: {e}") from e

        if deleted:
            logger.info("llm_logs_pruned", deleted=deleted, retention_days=retention_days)
        return deleted

    # =========================================================================
    # Stats
    # =========================================================================

    async def get_stats(self) -> dict[str, Any]:
        """Counts for the health endpoint and the ``stats`` command."""
        try:
            async with self._db() as db:
                stats: dict[str, Any] = {}

                cursor = await db.execute(
                    "SELECT sync_status, COUNT(*) AS count FROM users GROUP BY sync_status"
                )
                stats["users_by_sync_status"] = {
                    row["sync_status"]: row["count"] for row in await cursor.fetchall()
                }

                cursor = await db.execute(
                    """
                    SELECT
                        COUNT(*) AS total,
                        SUM(CASE WHEN processed = 1 THEN 1 ELSE 0 END) AS processed,
                        SUM(CASE WHEN processing_error != '' THEN 1 ELSE 0 END) AS failed
                    FROM messages
                    """
                )
                row = await cursor.fetchone()
                total = row["total"] or 0
                processed = row["processed"] or 0
                failed = row["failed"] or 0
                stats["messages"] = {
                    "total": total,
                    "processed": processed,
                    "failed": failed,
                    "pending": total - processed - failed,
                }

                cursor = await db.execute(
                    "SELECT type, COUNT(*) AS count FROM facts GROUP BY type ORDER BY type"
                )
                stats["facts_by_type"] = {
                    row["type"]: row["count"] for row in await cursor.fetchall()
                }
                return stats
        except aiosqlite.Error as e:
            logger.error("stats_query_failed", error=str(e))
            raise DatabaseError(f"Failed to get stats: {e}") from e
