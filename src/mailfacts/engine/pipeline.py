"""Pipeline API: the three operations callers use.

Scheduled jobs, HTTP routes and CLI commands all go through the same
methods, so on-demand and scheduled runs behave identically.

Usage:
    from mailfacts.engine.pipeline import Pipeline

    pipeline = Pipeline.build(config, store, anthropic_client)
    await pipeline.trigger_sync("user-1")
    await pipeline.extract_batch()
    result = await pipeline.answer_query("user-1", "Total spent this month")
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from mailfacts.auth.google_oauth import GoogleOAuthClient
from mailfacts.auth.vault import CredentialVault
from mailfacts.config import get_config, reload_config_if_changed
from mailfacts.core.errors import DatabaseError, QueryExecutionError, UserNotFoundError
from mailfacts.core.logging import get_logger
from mailfacts.engine.extraction import ExtractionBatchResult, ExtractionEngine
from mailfacts.engine.sync import SyncEngine, SyncResult
from mailfacts.extraction.extractor import FactExtractor
from mailfacts.query.engine import IntentEngine, QueryResult

if TYPE_CHECKING:
    import anthropic

    from mailfacts.config_schema import AppConfig
    from mailfacts.db.store import DatabaseStore
    from mailfacts.gmail.client import GmailClient

logger = get_logger(__name__)


class Pipeline:
    """Facade over the sync, extraction and intent engines."""

    def __init__(
        self,
        store: DatabaseStore,
        sync_engine: SyncEngine,
        extraction_engine: ExtractionEngine,
        intent_engine: IntentEngine,
    ):
        self.store = store
        self.sync_engine = sync_engine
        self.extraction_engine = extraction_engine
        self.intent_engine = intent_engine

    @classmethod
    def build(
        cls,
        config: AppConfig,
        store: DatabaseStore,
        anthropic_client: anthropic.Anthropic,
        vault: CredentialVault | None = None,
        oauth: GoogleOAuthClient | None = None,
        client_factory: Callable[[str], GmailClient] | None = None,
    ) -> Pipeline:
        """Wire the engines from config.

        Raises:
            VaultKeyError: If no vault is given and TOKEN_ENCRYPTION_KEY is missing or short
        """
        vault = vault or CredentialVault.from_env()
        oauth = oauth or GoogleOAuthClient(
            client_id=config.google.client_id,
            token_uri=config.google.token_uri,
            timeout=config.sync.request_timeout_seconds,
        )
        sync_engine = SyncEngine(
            store=store,
            vault=vault,
            oauth=oauth,
            config=config,
            client_factory=client_factory,
        )
        extractor = FactExtractor(anthropic_client=anthropic_client, store=store, config=config)
        extraction_engine = ExtractionEngine(store=store, extractor=extractor, config=config)
        intent_engine = IntentEngine(anthropic_client=anthropic_client, store=store, config=config)
        return cls(store, sync_engine, extraction_engine, intent_engine)

    def update_config(self, config: AppConfig) -> None:
        self.sync_engine.update_config(config)
        self.extraction_engine.update_config(config)
        self.intent_engine.update_config(config)

    def refresh_config(self) -> bool:
        """Pick up config file changes. Returns True if a new config was applied."""
        if not reload_config_if_changed():
            return False
        self.update_config(get_config())
        logger.info("pipeline_config_reloaded")
        return True

    async def trigger_sync(self, user_id: str) -> SyncResult:
        """Sync one user's mailbox.

        Raises:
            UserNotFoundError: If the user does not exist
            DatabaseError: If the store fails before the sync lock is taken
        """
        return await self.sync_engine.sync(user_id)

    async def sync_all(self) -> list[SyncResult]:
        """Sync every user, one at a time.

        A store failure for one user is reported as an error result and the
        remaining users are still synced.
        """
        results: list[SyncResult] = []
        for user in await self.store.list_users():
            try:
                results.append(await self.trigger_sync(user.id))
            except UserNotFoundError:
                logger.warning("sync_user_vanished", user_id=user.id)
            except DatabaseError as e:
                logger.error("sync_user_store_failed", user_id=user.id, error=str(e))
                results.append(
                    SyncResult(user_id=user.id, run_id="", status="error", error=str(e))
                )
        return results

    async def extract_batch(self, batch_size: int | None = None) -> ExtractionBatchResult:
        return await self.extraction_engine.extract_batch(batch_size)

    async def answer_query(self, user_id: str, question: str) -> QueryResult:
        """Answer a question over one user's facts.

        Raises:
            InvalidQueryError: Blank or oversized question (400)
            UserNotFoundError: Unknown user
            IntentParseError: Question not understood (422)
            QueryExecutionError: Store read failed (500)
        """
        question = self.intent_engine.validate_question(question)
        try:
            user = await self.store.get_user(user_id)
        except DatabaseError as e:
            raise QueryExecutionError(details=str(e)) from e
        if user is None:
            raise UserNotFoundError(user_id)
        return await self.intent_engine.ask(user_id, question)

    async def scheduled_sync(self) -> list[SyncResult]:
        self.refresh_config()
        return await self.sync_all()

    async def scheduled_extraction(self) -> ExtractionBatchResult:
        self.refresh_config()
        return await self.extract_batch()
