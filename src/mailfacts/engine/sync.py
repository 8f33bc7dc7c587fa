"""Mailbox sync engine.

Brings one user's stored messages up to date with Gmail.

Run steps:
1. Acquire the per-user lock (atomic idle/error -> syncing). If another
   run holds it, return a conflict result without touching anything.
2. Make sure there is a usable access token, refreshing it when it expires
   within the safety buffer. A refreshed token is persisted immediately.
3. Discover new message IDs: the History API from the stored cursor, or a
   time-window listing when there is no cursor or it has expired.
4. Fetch full messages in rounds, concurrently within a round. A failed
   fetch drops that message and is not counted.
5. Normalize and insert each message. Duplicates on the natural key count
   as skipped. Any other per-message error counts as failed.
6. Release the lock in ``finally``: idle on success, error on a fatal
   failure, with ``last_synced_at`` and the best-known cursor.

Usage:
    from mailfacts.engine.sync import SyncEngine

    engine = SyncEngine(store=store, vault=vault, oauth=oauth, config=config)
    result = await engine.sync("user-1")
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

from mailfacts.core.errors import (
    AuthenticationError,
    DatabaseError,
    HistoryExpiredError,
    UserNotFoundError,
)
from mailfacts.core.logging import get_logger, set_run_id
from mailfacts.gmail.client import GmailClient
from mailfacts.gmail.normalize import normalize_message

if TYPE_CHECKING:
    from mailfacts.auth.google_oauth import GoogleOAuthClient
    from mailfacts.auth.vault import CredentialVault
    from mailfacts.config_schema import AppConfig
    from mailfacts.db.store import DatabaseStore, User

logger = get_logger(__name__)

SyncOutcome = Literal["ok", "conflict", "error"]


@dataclass
class SyncResult:
    """Outcome of one sync run.

    ``fetched`` counts messages whose full content was retrieved;
    ``stored + skipped + failed == fetched``.
    """

    user_id: str
    run_id: str
    status: SyncOutcome = "ok"
    discovered: int = 0
    fetched: int = 0
    stored: int = 0
    skipped: int = 0
    failed: int = 0
    cursor: str = ""
    used_fallback: bool = False
    error: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _Discovery:
    message_ids: list[str]
    cursor: str
    used_fallback: bool


class SyncEngine:
    """Incremental mailbox sync for one user at a time.

    Attributes:
        _store: DatabaseStore for users and messages
        _vault: CredentialVault for token decryption/encryption
        _oauth: GoogleOAuthClient for refresh-token exchange
        _client_factory: Builds a GmailClient from an access token
        _config: Application configuration
    """

    def __init__(
        self,
        store: DatabaseStore,
        vault: CredentialVault,
        oauth: GoogleOAuthClient,
        config: AppConfig,
        client_factory: Callable[[str], GmailClient] | None = None,
    ):
        self._store = store
        self._vault = vault
        self._oauth = oauth
        self._config = config
        self._client_factory = client_factory or self._default_client

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config

    def _default_client(self, access_token: str) -> GmailClient:
        return GmailClient(
            access_token,
            base_url=self._config.google.api_base_url,
            timeout=self._config.sync.request_timeout_seconds,
        )

    async def sync(self, user_id: str) -> SyncResult:
        """Run one sync for a user.

        Returns:
            SyncResult with status 'ok', 'conflict' or 'error'. Failures are
            reported in the result, never raised.

        Raises:
            UserNotFoundError: If the user does not exist
            DatabaseError: If the store fails before the sync lock is taken
        """
        user = await self._store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        run_id = str(uuid.uuid4())
        result = SyncResult(user_id=user_id, run_id=run_id)

        if not await self._store.try_begin_sync(user_id):
            result.status = "conflict"
            logger.info("sync_conflict", user_id=user_id)
            return result

        set_run_id(run_id)
        start_time = time.monotonic()
        final_status: Literal["idle", "error"] = "error"

        logger.info("sync_start", user_id=user_id, has_cursor=bool(user.history_cursor))

        try:
            result.cursor = await self._run(user, result)
            final_status = "idle"
        except Exception as e:
            result.status = "error"
            result.error = str(e)
            logger.error(
                "sync_failed",
                user_id=user_id,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=not isinstance(e, AuthenticationError),
            )
        finally:
            try:
                await self._store.finish_sync(user_id, status=final_status, cursor=result.cursor)
            except DatabaseError as e:
                logger.error("sync_unlock_failed", user_id=user_id, error=str(e))

            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "sync_complete",
                user_id=user_id,
                status=result.status,
                sync_status=final_status,
                discovered=result.discovered,
                fetched=result.fetched,
                stored=result.stored,
                skipped=result.skipped,
                failed=result.failed,
                used_fallback=result.used_fallback,
                cursor_advanced=bool(result.cursor),
                duration_ms=result.duration_ms,
            )
            set_run_id(None)

        return result

    async def _run(self, user: User, result: SyncResult) -> str:
        """Body of a locked run. Returns the cursor to persist ("" = keep current)."""
        access_token = await self._ensure_access_token(user)
        client = self._client_factory(access_token)

        try:
            discovery = await self._discover(client, user)
            message_ids = list(dict.fromkeys(discovery.message_ids))
            result.discovered = len(message_ids)
            result.used_fallback = discovery.used_fallback

            if not message_ids:
                logger.info("sync_no_new_messages", user_id=user.id)
                return ""

            max_history_id = 0
            batch_size = self._config.sync.fetch_batch_size

            for start in range(0, len(message_ids), batch_size):
                batch = message_ids[start : start + batch_size]
                fetched = await self._fetch_batch(client, batch)
                result.fetched += len(fetched)

                for raw in fetched:
                    max_history_id = max(max_history_id, _history_id_of(raw))
                    await self._store_one(raw, user.id, result)

            if discovery.used_fallback:
                return str(max_history_id) if max_history_id else ""
            return discovery.cursor
        finally:
            client.close()

    async def _ensure_access_token(self, user: User) -> str:
        """Return a usable access token, refreshing and persisting it if needed.

        Raises:
            AuthenticationError: If a refresh is needed and impossible or rejected
        """
        access_token = self._vault.decrypt(user.access_token_enc)
        buffer = timedelta(minutes=self._config.sync.refresh_buffer_minutes)
        expires_at = user.token_expires_at

        if access_token and expires_at and datetime.now(UTC) < expires_at - buffer:
            return access_token

        refresh_token = self._vault.decrypt(user.refresh_token_enc)
        if not refresh_token:
            raise AuthenticationError(
                f"User {user.id} has no usable refresh token; Gmail must be reconnected"
            )

        grant = await asyncio.to_thread(self._oauth.refresh_access_token, refresh_token)
        await self._store.update_tokens(
            user.id,
            access_token_enc=self._vault.encrypt(grant.access_token),
            token_expires_at=grant.expires_at,
        )
        logger.info("access_token_refreshed", user_id=user.id)
        return grant.access_token

    async def _discover(self, client: GmailClient, user: User) -> _Discovery:
        page_size = self._config.sync.page_size

        if user.history_cursor:
            try:
                page = await asyncio.to_thread(
                    client.list_history, user.history_cursor, page_size
                )
                return _Discovery(page.message_ids, page.history_id, used_fallback=False)
            except HistoryExpiredError:
                logger.warning("sync_cursor_expired_using_fallback", user_id=user.id)

        after = user.last_synced_at or (
            datetime.now(UTC) - timedelta(days=self._config.sync.lookback_days)
        )
        message_ids = await asyncio.to_thread(client.list_message_ids, after, page_size)
        return _Discovery(message_ids, "", used_fallback=True)

    async def _fetch_batch(self, client: GmailClient, batch: list[str]) -> list[dict[str, Any]]:
        """Fetch one round concurrently; failed fetches are logged and dropped."""
        outcomes = await asyncio.gather(
            *(asyncio.to_thread(client.get_message, message_id) for message_id in batch),
            return_exceptions=True,
        )

        fetched: list[dict[str, Any]] = []
        for message_id, outcome in zip(batch, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "message_fetch_failed",
                    provider_message_id=message_id[:16],
                    error_type=type(outcome).__name__,
                    error=str(outcome),
                )
                continue
            fetched.append(outcome)
        return fetched

    async def _store_one(self, raw: dict[str, Any], user_id: str, result: SyncResult) -> None:
        try:
            message = normalize_message(raw, user_id)
            if await self._store.insert_message(message):
                result.stored += 1
            else:
                result.skipped += 1
        except Exception as e:
            result.failed += 1
            logger.warning(
                "message_store_failed",
                provider_message_id=str(raw.get("id", ""))[:16],
                error_type=type(e).__name__,
                error=str(e),
            )


def _history_id_of(raw: dict[str, Any]) -> int:
    try:
        return int(raw.get("historyId") or 0)
    except (TypeError, ValueError):
        return 0
