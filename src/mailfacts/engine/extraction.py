"""Fact extraction batch loop.

Each batch takes the oldest unprocessed, error-free messages (FIFO), extracts
facts for each one independently, and either saves the facts together with
the processed flag or records a terminal ``processing_error``. A failing
message never aborts the batch.

Usage:
    from mailfacts.engine.extraction import ExtractionEngine

    engine = ExtractionEngine(store=store, extractor=extractor, config=config)
    result = await engine.extract_batch()
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from mailfacts.core.errors import DatabaseError
from mailfacts.core.logging import get_logger, set_run_id
from mailfacts.db.store import MAX_PROCESSING_ERROR_LENGTH

if TYPE_CHECKING:
    from mailfacts.config_schema import AppConfig
    from mailfacts.db.store import DatabaseStore, Message
    from mailfacts.extraction.extractor import FactExtractor

logger = get_logger(__name__)


@dataclass
class ExtractionBatchResult:
    """Aggregate counts for one extraction batch."""

    run_id: str
    processed: int = 0
    failed: int = 0
    total: int = 0
    facts_created: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ExtractionEngine:
    """Runs extraction batches over the unprocessed message queue.

    Attributes:
        _store: DatabaseStore for the queue and fact writes
        _extractor: FactExtractor that calls the NLU service
        _config: Application configuration
    """

    def __init__(self, store: DatabaseStore, extractor: FactExtractor, config: AppConfig):
        self._store = store
        self._extractor = extractor
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config
        self._extractor.update_config(config)

    async def extract_batch(self, batch_size: int | None = None) -> ExtractionBatchResult:
        """Process up to ``batch_size`` queued messages.

        Raises:
            DatabaseError: If the queue itself cannot be read
        """
        run_id = str(uuid.uuid4())
        set_run_id(run_id)
        start_time = time.monotonic()
        result = ExtractionBatchResult(run_id=run_id)
        limit = batch_size or self._config.extraction.batch_size

        try:
            messages = await self._store.get_unprocessed_messages(limit)
            result.total = len(messages)
            logger.info("extraction_batch_start", batch_size=limit, selected=result.total)

            for message in messages:
                created = await self._process_one(message)
                if created is None:
                    result.failed += 1
                else:
                    result.processed += 1
                    result.facts_created += created

            await self._prune_logs()
        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "extraction_batch_complete",
                processed=result.processed,
                failed=result.failed,
                total=result.total,
                facts_created=result.facts_created,
                duration_ms=result.duration_ms,
            )
            set_run_id(None)

        return result

    async def _process_one(self, message: Message) -> int | None:
        """Extract and save one message. Returns facts created, or None on failure."""
        try:
            facts = await self._extractor.extract(message)
            return await self._store.save_facts_and_mark_processed(message, facts)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"[:MAX_PROCESSING_ERROR_LENGTH]
            logger.warning(
                "message_extraction_failed",
                message_id=message.id,
                error_type=type(e).__name__,
                error=str(e)[:200],
            )
            try:
                await self._store.mark_processing_error(message.id, error)
            except DatabaseError as mark_error:
                logger.error(
                    "processing_error_write_failed",
                    message_id=message.id,
                    error=str(mark_error),
                )
            return None

    async def _prune_logs(self) -> None:
        settings = self._config.llm_logging
        if not settings.enabled:
            return
        try:
            await self._store.prune_llm_logs(settings.retention_days)
        except DatabaseError as e:
            logger.warning("llm_log_prune_skipped", error=str(e))
