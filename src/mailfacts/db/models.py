"""SQLite database schema and initialization for mailfacts.

Tables:
- users: provider credentials (encrypted), sync cursor and sync status
- messages: normalized mailbox messages, unique per (user_id, provider_message_id)
- facts: typed, confidence-scored values extracted from one message
- llm_request_log: Claude API call log for debugging extraction and queries

Usage:
    from mailfacts.db.models import init_database

    await init_database("data/mailfacts.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailfacts.core.errors import DatabaseError
from mailfacts.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = ("users", "messages", "facts", "llm_request_log")

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

-- One row per connected mailbox
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,                    -- Caller-assigned identity key
    email TEXT,
    access_token_enc TEXT DEFAULT '',       -- Vault ciphertext, '' if none
    refresh_token_enc TEXT DEFAULT '',      -- Vault ciphertext, '' if none
    token_expires_at TEXT,                  -- ISO-8601 UTC
    history_cursor TEXT DEFAULT '',         -- Gmail historyId, '' before first cursor
    last_synced_at TEXT,                    -- ISO-8601 UTC, NULL before first sync
    sync_status TEXT DEFAULT 'idle'
        CHECK (sync_status IN ('idle', 'syncing', 'error')),
    created_at TEXT NOT NULL
);

-- Normalized messages; never overwritten once stored
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id),
    provider_message_id TEXT NOT NULL,      -- Gmail message ID
    thread_id TEXT,
    history_id TEXT,                        -- Gmail historyId at fetch time
    sender TEXT DEFAULT '',
    recipient TEXT DEFAULT '',
    subject TEXT DEFAULT '',
    body TEXT DEFAULT '',                   -- Plain-text body, byte-capped
    snippet TEXT DEFAULT '',
    timestamp TEXT,                         -- ISO-8601 UTC
    labels TEXT DEFAULT '[]',               -- JSON array of label IDs
    has_attachments INTEGER DEFAULT 0,
    size_estimate INTEGER DEFAULT 0,
    processed INTEGER DEFAULT 0,            -- 1 once facts were extracted
    processing_error TEXT DEFAULT '',       -- Non-empty = terminal extraction failure
    created_at TEXT NOT NULL,
    UNIQUE (user_id, provider_message_id)
);

-- Extraction queue scan: unprocessed, error-free, oldest first
CREATE INDEX IF NOT EXISTS idx_messages_queue
    ON messages(processed, processing_error, created_at);

CREATE INDEX IF NOT EXISTS idx_messages_user_timestamp ON messages(user_id, timestamp);

-- Facts extracted from messages; never mutated
CREATE TABLE IF NOT EXISTS facts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    message_id INTEGER NOT NULL REFERENCES messages(id),
    type TEXT NOT NULL,
    value TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.5,
    metadata TEXT DEFAULT '{}',             -- JSON object, type-specific keys
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_facts_user_type_created ON facts(user_id, type, created_at);
CREATE INDEX IF NOT EXISTS idx_facts_message ON facts(message_id);

-- LLM request/response log for debugging extraction and query issues
CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,                -- ISO-8601 UTC
    task_type TEXT,                         -- 'extraction', 'intent', 'answer'
    model TEXT,
    message_id INTEGER,                     -- NULL for query tasks
    run_id TEXT,                            -- Correlation ID of the sync/extraction run
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT                              -- NULL on success
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_run ON llm_request_log(run_id);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file and parent directory if needed. Safe to call
    repeatedly.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Tokens are encrypted but message bodies are not: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Return True if every required table exists."""
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("missing_database_tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
