"""Claude fact extractor using forced tool use for structured output.

One message in, zero or more validated facts out.

Error handling strategy:
- Transient errors (429, 5xx, network): handled by the Anthropic SDK (max_retries=3)
- Anything else (API status errors, missing tool call, malformed fact list):
  raised as ExtractionError; the pipeline records it on the message as a
  terminal failure. There is no app-level retry.
- Individual malformed facts inside an otherwise valid list are dropped with
  a warning rather than failing the whole message.

Usage:
    from mailfacts.extraction.extractor import FactExtractor

    extractor = FactExtractor(anthropic_client=client, store=store, config=config)
    facts = await extractor.extract(message)
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import TYPE_CHECKING, Any

import anthropic

from mailfacts.core.errors import ExtractionError
from mailfacts.core.llm_logging import log_llm_call
from mailfacts.core.logging import get_logger
from mailfacts.db.store import Fact
from mailfacts.extraction.prompts import (
    EXTRACTION_SYSTEM_PROMPT,
    FACT_CONTRACT_VERSION,
    FACT_TYPES,
    RECORD_FACTS_TOOL,
    build_message_content,
)

if TYPE_CHECKING:
    from mailfacts.config_schema import AppConfig
    from mailfacts.db.store import DatabaseStore, Message

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = 0.5
MAX_VALUE_LENGTH = 1000


class FactExtractor:
    """Extracts typed facts from one message with Claude.

    Attributes:
        _client: Anthropic API client (configured with max_retries=3)
        _store: Database store, used for LLM request logging
        _config: Application configuration
    """

    def __init__(
        self,
        anthropic_client: anthropic.Anthropic,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._client = anthropic_client
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def extract(self, message: Message) -> list[Fact]:
        """Extract facts from a message.

        Returns:
            Validated facts (possibly empty), not yet persisted

        Raises:
            ExtractionError: If the call fails or the response is malformed
        """
        model = self._config.models.extraction
        settings = self._config.extraction
        messages = [
            {"role": "user", "content": build_message_content(message, settings.body_char_limit)}
        ]

        start_time = time.monotonic()
        api_response = None
        try:
            # The SDK client is synchronous; keep the event loop free while it waits
            api_response = await asyncio.to_thread(
                self._client.messages.create,
                model=model,
                max_tokens=settings.max_tokens,
                temperature=settings.temperature,
                system=EXTRACTION_SYSTEM_PROMPT,
                messages=messages,
                tools=[RECORD_FACTS_TOOL],
                tool_choice={"type": "tool", "name": RECORD_FACTS_TOOL["name"]},
            )
        except anthropic.APIError as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            error = _describe_api_error(e)
            logger.error(
                "extraction_api_error",
                message_id=message.id,
                error_type=type(e).__name__,
                error=error,
            )
            await self._log(messages, None, duration_ms, None, message.id, error)
            raise ExtractionError(error, message_id=message.id) from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        tool_call = _extract_tool_call(api_response)

        if tool_call is None:
            error = "No record_facts tool call in response"
            await self._log(messages, api_response, duration_ms, None, message.id, error)
            raise ExtractionError(error, message_id=message.id)

        raw_facts = tool_call.get("facts")
        if not isinstance(raw_facts, list):
            error = f"Malformed response: 'facts' must be a list, got {type(raw_facts).__name__}"
            await self._log(messages, api_response, duration_ms, tool_call, message.id, error)
            raise ExtractionError(error, message_id=message.id)

        await self._log(messages, api_response, duration_ms, tool_call, message.id, None)

        facts: list[Fact] = []
        for index, raw in enumerate(raw_facts):
            fact = _build_fact(raw, message)
            if fact is None:
                logger.warning(
                    "extraction_fact_dropped",
                    message_id=message.id,
                    index=index,
                    contract_version=FACT_CONTRACT_VERSION,
                )
                continue
            facts.append(fact)

        logger.debug(
            "extraction_complete",
            message_id=message.id,
            facts=len(facts),
            dropped=len(raw_facts) - len(facts),
            duration_ms=duration_ms,
        )
        return facts

    async def _log(
        self,
        messages: list[dict[str, Any]],
        response: anthropic.types.Message | None,
        duration_ms: int,
        tool_call: dict[str, Any] | None,
        message_id: int | None,
        error: str | None,
    ) -> None:
        await log_llm_call(
            self._store,
            self._config.llm_logging,
            task_type="extraction",
            model=self._config.models.extraction,
            system=EXTRACTION_SYSTEM_PROMPT,
            messages=messages,
            response=response,
            duration_ms=duration_ms,
            tool_call=tool_call,
            message_id=message_id,
            error=error,
        )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_call(response: Any) -> dict[str, Any] | None:
    for block in getattr(response, "content", None) or []:
        if block.type == "tool_use" and block.name == RECORD_FACTS_TOOL["name"]:
            return block.input if isinstance(block.input, dict) else None
    return None


def _describe_api_error(error: anthropic.APIError) -> str:
    if isinstance(error, anthropic.RateLimitError):
        return f"Rate limited after SDK retries: {error}"
    if isinstance(error, anthropic.APIConnectionError):
        return f"API connection error after SDK retries: {error}"
    if isinstance(error, anthropic.APIStatusError):
        return f"API status error {error.status_code}: {error.message}"
    return f"API error: {error}"


def _build_fact(raw: Any, message: Message) -> Fact | None:
    """Validate one fact entry from the tool call. Returns None if unusable."""
    if not isinstance(raw, dict):
        return None

    fact_type = raw.get("type")
    if not isinstance(fact_type, str) or fact_type not in FACT_TYPES:
        return None

    value = raw.get("value")
    if isinstance(value, bool) or not isinstance(value, str | int | float):
        return None
    value = str(value).strip()[:MAX_VALUE_LENGTH]
    if not value:
        return None

    confidence = raw.get("confidence", DEFAULT_CONFIDENCE)
    if isinstance(confidence, bool):
        confidence = DEFAULT_CONFIDENCE
    try:
        confidence = float(confidence)
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE
    if math.isnan(confidence):
        confidence = DEFAULT_CONFIDENCE
    confidence = min(1.0, max(0.0, confidence))

    metadata = raw.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    return Fact(
        type=fact_type,
        value=value,
        user_id=message.user_id,
        message_id=message.id,
        confidence=confidence,
        metadata=metadata,
    )
