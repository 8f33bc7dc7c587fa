"""Tests for the intent engine: parse, execute and answer phases."""

from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import anthropic
import pytest

from mailfacts.config_schema import AppConfig
from mailfacts.core.errors import (
    DatabaseError,
    IntentParseError,
    InvalidQueryError,
    QueryExecutionError,
)
from mailfacts.db.store import DatabaseStore, Fact, Message
from mailfacts.query.engine import IntentEngine, fallback_answer, sum_values
from mailfacts.query.intent import Intent

NOW = datetime(2026, 3, 15, 10, 30, tzinfo=UTC)


def _make_intent_response(tool_input: dict[str, Any]) -> SimpleNamespace:
    return SimpleNamespace(
        content=[
            SimpleNamespace(
                type="tool_use", id="toolu_01", name="submit_intent", input=tool_input
            )
        ],
        model="claude-haiku-4-5-20251001",
        usage=SimpleNamespace(input_tokens=200, output_tokens=40),
        stop_reason="tool_use",
    )


def _make_text_response(text: str) -> SimpleNamespace:
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        model="claude-haiku-4-5-20251001",
        usage=SimpleNamespace(input_tokens=300, output_tokens=30),
        stop_reason="end_turn",
    )


def _make_client(*responses: Any) -> MagicMock:
    client = MagicMock()
    client.messages.create = MagicMock(side_effect=list(responses))
    return client


@pytest.fixture
async def fact_store(store: DatabaseStore) -> DatabaseStore:
    """Store with one user and a receipt message carrying price/merchant facts."""
    await store.upsert_user("alice")
    message = Message(
        user_id="alice",
        provider_message_id="m1",
        sender="Amazon <auto-confirm@amazon.in>",
        subject="Your Amazon order",
        timestamp=datetime(2026, 3, 10, tzinfo=UTC),
    )
    await store.insert_message(message)
    march = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)
    await store.save_facts_and_mark_processed(
        message,
        [
            Fact("price", "199.00", confidence=0.9, created_at=march),
            Fact("price", "150.00", confidence=0.95, created_at=march),
            Fact("price", "999.00", confidence=0.3, created_at=march),
            Fact("price", "75.00", confidence=0.9, created_at=datetime(2026, 2, 20, tzinfo=UTC)),
            Fact("merchant", "Amazon", confidence=0.9, created_at=march),
        ],
    )
    return store


def test_sum_values_rounds_half_up() -> None:
    assert str(sum_values(["0.005", "1"])) == "1.01"
    assert str(sum_values(["199.00", "150.00"])) == "349.00"


def test_sum_values_skips_non_numeric() -> None:
    assert str(sum_values(["abc", None, "NaN", "10.50"])) == "10.50"


def test_sum_values_ignores_numbers_too_long_to_be_amounts() -> None:
    tracking = "420902109400111899223197428490"
    assert str(sum_values([tracking, "12.25"])) == "12.25"
    assert str(sum_values(["1E+500", "1"])) == "1.00"
    assert str(sum_values(["999999999999999999.99"])) == "999999999999999999.99"


def test_fallback_answer() -> None:
    assert fallback_answer(3) == "Found 3 result(s). See the data below."


class TestValidateQuestion:
    def test_blank(self, sample_config: AppConfig) -> None:
        engine = IntentEngine(_make_client(), AsyncMock(), sample_config)
        with pytest.raises(InvalidQueryError, match="Query is required"):
            engine.validate_question("   ")
        with pytest.raises(InvalidQueryError):
            engine.validate_question(None)

    def test_too_long(self, sample_config: AppConfig) -> None:
        engine = IntentEngine(_make_client(), AsyncMock(), sample_config)
        with pytest.raises(InvalidQueryError, match="max 500"):
            engine.validate_question("x" * 501)

    def test_status_code(self) -> None:
        assert InvalidQueryError("Query is required").status_code == 400


class TestParse:
    async def test_forced_tool_call(self, sample_config: AppConfig) -> None:
        client = _make_client(_make_intent_response({"action": "sum", "entity": "price"}))
        engine = IntentEngine(client, AsyncMock(), sample_config)

        intent = await engine.parse("Total spent this month", now=NOW)

        assert intent.action == "sum"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": "submit_intent"}
        assert kwargs["temperature"] == 0.0
        assert "2026-03-15" in kwargs["system"]

    async def test_missing_tool_call(self, sample_config: AppConfig) -> None:
        engine = IntentEngine(
            _make_client(_make_text_response("hmm")), AsyncMock(), sample_config
        )

        with pytest.raises(IntentParseError) as exc_info:
            await engine.parse("what?", now=NOW)
        assert str(exc_info.value) == "Could not understand query"
        assert exc_info.value.status_code == 422

    async def test_schema_violation(self, sample_config: AppConfig) -> None:
        client = _make_client(_make_intent_response({"action": "sum", "entity": "weather"}))
        engine = IntentEngine(client, AsyncMock(), sample_config)

        with pytest.raises(IntentParseError) as exc_info:
            await engine.parse("weather?", now=NOW)
        assert "entity" in exc_info.value.details

    @pytest.mark.parametrize(
        "tool_input",
        [
            {"action": "list", "entity": "price", "limit": [5]},
            {"action": "list", "entity": "price", "limit": {"max": 5}},
            {"action": "list", "entity": "price", "filter": ["current"]},
            {"action": "sum", "entity": "price", "filter": {"month": 3}},
            {"action": "sum", "entity": "price", "filter": {"month": ["2026-03"]}},
        ],
    )
    async def test_wrongly_typed_fields(
        self, sample_config: AppConfig, tool_input: dict[str, Any]
    ) -> None:
        client = _make_client(_make_intent_response(tool_input))
        engine = IntentEngine(client, AsyncMock(), sample_config)

        with pytest.raises(IntentParseError) as exc_info:
            await engine.parse("List my purchases", now=NOW)
        assert exc_info.value.status_code == 422

    async def test_service_error(self, sample_config: AppConfig) -> None:
        client = _make_client(anthropic.APIConnectionError(request=MagicMock()))
        engine = IntentEngine(client, AsyncMock(), sample_config)

        with pytest.raises(IntentParseError):
            await engine.parse("Total spent", now=NOW)


class TestExecute:
    async def test_sum_current_month(
        self, fact_store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        engine = IntentEngine(_make_client(), fact_store, sample_config)
        intent = Intent.model_validate(
            {"action": "sum", "entity": "price", "filter": {"month": "current"}}
        )

        data = await engine.execute("alice", intent, now=NOW)

        assert data["total"] == 349.0
        assert data["count"] == 2
        assert {doc["value"] for doc in data["documents"]} == {"199.00", "150.00"}

    async def test_sum_over_tracking_numbers(
        self, fact_store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        message = Message(user_id="alice", provider_message_id="m2", subject="Shipped")
        await fact_store.insert_message(message)
        await fact_store.save_facts_and_mark_processed(
            message,
            [Fact("tracking_num", "420902109400111899223197428490", confidence=0.9)],
        )
        engine = IntentEngine(_make_client(), fact_store, sample_config)
        intent = Intent.model_validate({"action": "sum", "entity": "tracking_num"})

        data = await engine.execute("alice", intent, now=NOW)

        assert data["total"] == 0.0
        assert data["count"] == 1

    async def test_count_reports_all_matches_beyond_limit(
        self, fact_store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        engine = IntentEngine(_make_client(), fact_store, sample_config)
        intent = Intent.model_validate({"action": "count", "entity": "price", "limit": 1})

        data = await engine.execute("alice", intent, now=NOW)

        assert data["count"] == 3
        assert len(data["documents"]) == 1
        assert "total" not in data

    async def test_merchant_filter_matches_value(
        self, fact_store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        engine = IntentEngine(_make_client(), fact_store, sample_config)
        intent = Intent.model_validate(
            {"action": "find", "entity": "merchant", "filter": {"merchant": "amazon"}}
        )

        data = await engine.execute("alice", intent, now=NOW)

        assert data["count"] == 1
        assert data["documents"][0]["value"] == "Amazon"

    async def test_email_entity_queries_messages(
        self, fact_store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        engine = IntentEngine(_make_client(), fact_store, sample_config)
        intent = Intent.model_validate(
            {"action": "list", "entity": "email", "filter": {"keyword": "order"}}
        )

        data = await engine.execute("alice", intent, now=NOW)

        assert data["count"] == 1
        assert data["documents"][0]["subject"] == "Your Amazon order"

    async def test_store_failure(self, sample_config: AppConfig) -> None:
        store = AsyncMock()
        store.query_facts.side_effect = DatabaseError("disk I/O error")
        engine = IntentEngine(_make_client(), store, sample_config)
        intent = Intent.model_validate({"action": "list", "entity": "price"})

        with pytest.raises(QueryExecutionError) as exc_info:
            await engine.execute("alice", intent, now=NOW)
        assert exc_info.value.status_code == 500
        assert "disk I/O error" in exc_info.value.details


class TestAsk:
    async def test_full_flow(self, fact_store: DatabaseStore, sample_config: AppConfig) -> None:
        client = _make_client(
            _make_intent_response(
                {"action": "sum", "entity": "price", "filter": {"month": "current"}}
            ),
            _make_text_response("You spent ₹349.00 this month."),
        )
        engine = IntentEngine(client, fact_store, sample_config)

        result = await engine.ask("alice", "Total spent this month", now=NOW)

        assert result.answer == "You spent ₹349.00 this month."
        assert result.answered_by == "model"
        assert result.data["total"] == 349.0

        answer_kwargs = client.messages.create.call_args_list[1].kwargs
        assert answer_kwargs["temperature"] == 0.3
        assert "tools" not in answer_kwargs
        assert '"total": "349.00"' in answer_kwargs["messages"][0]["content"]
        assert "₹" in answer_kwargs["system"]

    async def test_answer_failure_falls_back(
        self, fact_store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        client = _make_client(
            _make_intent_response({"action": "list", "entity": "price"}),
            anthropic.APIConnectionError(request=MagicMock()),
        )
        engine = IntentEngine(client, fact_store, sample_config)

        result = await engine.ask("alice", "List my purchases", now=NOW)

        assert result.answered_by == "fallback"
        assert result.answer == "Found 3 result(s). See the data below."

    async def test_empty_answer_falls_back(
        self, fact_store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        client = _make_client(
            _make_intent_response({"action": "count", "entity": "otp"}),
            _make_text_response("   "),
        )
        engine = IntentEngine(client, fact_store, sample_config)

        result = await engine.ask("alice", "How many OTPs?", now=NOW)

        assert result.answered_by == "fallback"
        assert result.data == {"count": 0, "documents": []}

    async def test_calls_are_logged(
        self, fact_store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        client = _make_client(
            _make_intent_response({"action": "count", "entity": "price"}),
            _make_text_response("3 prices."),
        )
        fact_store.log_llm_request = AsyncMock(return_value=1)
        engine = IntentEngine(client, fact_store, sample_config)

        await engine.ask("alice", "How many prices?", now=NOW)

        task_types = [c.kwargs["task_type"] for c in fact_store.log_llm_request.call_args_list]
        assert task_types == ["intent", "answer"]
