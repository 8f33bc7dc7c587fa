"""Database layer for mailfacts.

SQLite with async access through aiosqlite.

Usage:
    from mailfacts.db import DatabaseStore, Message

    store = DatabaseStore("data/mailfacts.db")
    await store.initialize()

    inserted = await store.insert_message(
        Message(user_id="u1", provider_message_id="18c2f...", subject="Your order")
    )
"""

from mailfacts.db.models import SCHEMA_VERSION, init_database, verify_schema
from mailfacts.db.store import (
    MAX_PROCESSING_ERROR_LENGTH,
    DatabaseStore,
    Fact,
    Message,
    User,
    to_db_timestamp,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "MAX_PROCESSING_ERROR_LENGTH",
    "to_db_timestamp",
    # Dataclasses
    "User",
    "Message",
    "Fact",
]
