"""Intent engine: question -> intent -> data -> grounded answer.

Three phases, each failing in its own way:
1. Parse: forced ``submit_intent`` tool call, validated into an Intent.
   Any failure is an IntentParseError (client-facing "could not understand").
2. Execute: a filtered read over facts (or messages for the ``email``
   entity). Store failures are a QueryExecutionError.
3. Answer: free-text narration from the data only. Any failure degrades to
   a templated answer built from the count, so narration never fails a query.

Usage:
    from mailfacts.query.engine import IntentEngine

    engine = IntentEngine(anthropic_client=client, store=store, config=config)
    result = await engine.ask("user-1", "Total spent this month")
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import TYPE_CHECKING, Any, Literal

import anthropic
from pydantic import ValidationError

from mailfacts.core.errors import (
    DatabaseError,
    IntentParseError,
    InvalidQueryError,
    QueryExecutionError,
)
from mailfacts.core.llm_logging import log_llm_call
from mailfacts.core.logging import get_logger
from mailfacts.query.intent import Intent, resolve_date_range
from mailfacts.query.prompts import (
    SUBMIT_INTENT_TOOL,
    build_answer_content,
    build_answer_system_prompt,
    build_intent_system_prompt,
)

if TYPE_CHECKING:
    from mailfacts.config_schema import AppConfig
    from mailfacts.db.store import DatabaseStore

logger = get_logger(__name__)

INTENT_MAX_TOKENS = 500
ANSWER_MAX_TOKENS = 300
ANSWER_TEMPERATURE = 0.3
CENTS = Decimal("0.01")
MAX_AMOUNT_DIGITS = 18
SUM_PRECISION = 40

AnsweredBy = Literal["model", "fallback"]


@dataclass
class QueryResult:
    """Answer to one question, with the intent and data it was grounded on."""

    answer: str
    intent: Intent
    data: dict[str, Any]
    answered_by: AnsweredBy = "model"

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "intent": self.intent.to_dict(),
            "data": self.data,
            "answered_by": self.answered_by,
        }


def fallback_answer(count: int) -> str:
    return f"Found {count} result(s). See the data below."


def sum_values(values: list[Any]) -> Decimal:
    """Sum decimal strings, rounded half-up to cents.

    Non-numeric values count as 0, and so do values with more than
    MAX_AMOUNT_DIGITS integer digits (tracking numbers and the like are not
    amounts).
    """
    with localcontext() as ctx:
        ctx.prec = SUM_PRECISION
        total = Decimal(0)
        for value in values:
            try:
                amount = Decimal(str(value).strip())
            except InvalidOperation:
                continue
            if amount.is_finite() and amount.adjusted() < MAX_AMOUNT_DIGITS:
                total += amount
        return total.quantize(CENTS, rounding=ROUND_HALF_UP)


class IntentEngine:
    """Answers natural-language questions over one user's facts.

    Attributes:
        _client: Anthropic API client (configured with max_retries=3)
        _store: DatabaseStore for fact/message reads and LLM logging
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
        """Update the config reference for hot-reload support."""
        self._config = config

    def validate_question(self, question: str | None) -> str:
        """Return the stripped question.

        Raises:
            InvalidQueryError: If it is blank or too long
        """
        text = (question or "").strip()
        if not text:
            raise InvalidQueryError("Query is required")
        max_length = self._config.query.max_question_length
        if len(text) > max_length:
            raise InvalidQueryError(f"Query too long (max {max_length} characters)")
        return text

    async def ask(self, user_id: str, question: str, now: datetime | None = None) -> QueryResult:
        """Run all three phases for one question.

        Raises:
            InvalidQueryError: Blank or oversized question
            IntentParseError: The question could not be turned into an intent
            QueryExecutionError: The data read failed
        """
        question = self.validate_question(question)
        now = now or datetime.now(UTC)

        intent = await self.parse(question, now=now)
        data = await self.execute(user_id, intent, now=now)
        answer, answered_by = await self.answer(question, intent, data)

        logger.info(
            "query_answered",
            user_id=user_id,
            action=intent.action,
            entity=intent.entity,
            count=data["count"],
            answered_by=answered_by,
        )
        return QueryResult(answer=answer, intent=intent, data=data, answered_by=answered_by)

    # =========================================================================
    # Phase 1: parse
    # =========================================================================

    async def parse(self, question: str, now: datetime | None = None) -> Intent:
        """Turn a question into a validated Intent.

        Raises:
            IntentParseError: On service failure, a missing tool call, or a schema violation
        """
        now = now or datetime.now(UTC)
        system = build_intent_system_prompt(now.date())
        messages = [{"role": "user", "content": question}]
        model = self._config.models.intent

        start_time = time.monotonic()
        try:
            response = await asyncio.to_thread(
                self._client.messages.create,
                model=model,
                max_tokens=INTENT_MAX_TOKENS,
                temperature=0.0,
                system=system,
                messages=messages,
                tools=[SUBMIT_INTENT_TOOL],
                tool_choice={"type": "tool", "name": SUBMIT_INTENT_TOOL["name"]},
            )
        except anthropic.APIError as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.error("intent_api_error", error_type=type(e).__name__, error=str(e))
            await self._log("intent", model, system, messages, None, duration_ms, None, str(e))
            raise IntentParseError(details=type(e).__name__) from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        tool_call = _extract_tool_call(response, SUBMIT_INTENT_TOOL["name"])

        if tool_call is None:
            error = "No submit_intent tool call in response"
            await self._log("intent", model, system, messages, response, duration_ms, None, error)
            raise IntentParseError(details=error)

        try:
            intent = Intent.model_validate(tool_call)
        except ValidationError as e:
            logger.warning("intent_invalid", errors=e.error_count())
            await self._log(
                "intent", model, system, messages, response, duration_ms, tool_call, str(e)
            )
            raise IntentParseError(details=str(e)) from e

        await self._log("intent", model, system, messages, response, duration_ms, tool_call, None)
        logger.debug("intent_parsed", action=intent.action, entity=intent.entity)
        return intent

    # =========================================================================
    # Phase 2: execute
    # =========================================================================

    async def execute(
        self, user_id: str, intent: Intent, now: datetime | None = None
    ) -> dict[str, Any]:
        """Run the intent against the store.

        Returns:
            ``{"total", "count", "documents"}`` for sum (count = rows summed),
            ``{"count", "documents"}`` otherwise (count = all matching rows)

        Raises:
            QueryExecutionError: If the store read fails
        """
        date_from, date_to = resolve_date_range(intent.filter, now=now)

        try:
            if intent.targets_email:
                terms = [intent.filter.keyword] if intent.filter.keyword else []
                messages, total = await self._store.query_messages(
                    user_id,
                    subject_terms=terms,
                    date_from=date_from,
                    date_to=date_to,
                    limit=intent.limit,
                )
                documents = [message.to_dict() for message in messages]
            else:
                terms = [t for t in (intent.filter.merchant, intent.filter.keyword) if t]
                facts, total = await self._store.query_facts(
                    user_id,
                    fact_type=intent.fact_type,
                    value_terms=terms,
                    date_from=date_from,
                    date_to=date_to,
                    min_confidence=self._config.query.min_confidence,
                    limit=intent.limit,
                )
                documents = [fact.to_dict() for fact in facts]
        except DatabaseError as e:
            logger.error("query_execution_failed", user_id=user_id, error=str(e))
            raise QueryExecutionError(details=str(e)) from e

        if intent.action == "sum":
            total_amount = sum_values([doc.get("value") for doc in documents])
            return {"total": float(total_amount), "count": len(documents), "documents": documents}
        return {"count": total, "documents": documents}

    # =========================================================================
    # Phase 3: answer
    # =========================================================================

    async def answer(
        self, question: str, intent: Intent, data: dict[str, Any]
    ) -> tuple[str, AnsweredBy]:
        """Narrate the data. Never raises; falls back to a templated answer."""
        system = build_answer_system_prompt(self._config.query.currency_symbol)
        messages = [
            {
                "role": "user",
                "content": build_answer_content(question, intent.to_dict(), self._snippet(data)),
            }
        ]
        model = self._config.models.answer

        start_time = time.monotonic()
        try:
            response = await asyncio.to_thread(
                self._client.messages.create,
                model=model,
                max_tokens=ANSWER_MAX_TOKENS,
                temperature=ANSWER_TEMPERATURE,
                system=system,
                messages=messages,
            )
            text = _extract_text(response).strip()
        except Exception as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.warning("answer_fallback", error_type=type(e).__name__, error=str(e))
            await self._log("answer", model, system, messages, None, duration_ms, None, str(e))
            return fallback_answer(data["count"]), "fallback"

        duration_ms = int((time.monotonic() - start_time) * 1000)
        await self._log("answer", model, system, messages, response, duration_ms, None, None)

        if not text:
            logger.warning("answer_fallback", error_type="EmptyAnswer")
            return fallback_answer(data["count"]), "fallback"
        return text, "model"

    def _snippet(self, data: dict[str, Any]) -> dict[str, Any]:
        """Aggregates plus the first rows, each reduced to type/value/metadata."""
        rows = []
        for doc in data["documents"][: self._config.query.answer_sample_size]:
            if "subject" in doc:
                rows.append(
                    {
                        "type": "email",
                        "value": doc["subject"],
                        "metadata": {"from": doc["sender"], "timestamp": doc["timestamp"]},
                    }
                )
            else:
                rows.append(
                    {"type": doc["type"], "value": doc["value"], "metadata": doc["metadata"]}
                )

        snippet: dict[str, Any] = {"count": data["count"], "rows": rows}
        if "total" in data:
            snippet["total"] = f"{data['total']:.2f}"
        return snippet

    async def _log(
        self,
        task_type: str,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        response: anthropic.types.Message | None,
        duration_ms: int,
        tool_call: dict[str, Any] | None,
        error: str | None,
    ) -> None:
        await log_llm_call(
            self._store,
            self._config.llm_logging,
            task_type=task_type,
            model=model,
            system=system,
            messages=messages,
            response=response,
            duration_ms=duration_ms,
            tool_call=tool_call,
            error=error,
        )


def _extract_tool_call(response: Any, name: str) -> dict[str, Any] | None:
    for block in getattr(response, "content", None) or []:
        if block.type == "tool_use" and block.name == name:
            return block.input if isinstance(block.input, dict) else None
    return None


def _extract_text(response: Any) -> str:
    parts = [block.text for block in response.content if block.type == "text"]
    return "\n".join(parts)
