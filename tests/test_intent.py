"""Tests for intent validation and date range resolution."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from mailfacts.query.intent import (
    DEFAULT_LIMIT,
    Intent,
    IntentFilter,
    month_range,
    resolve_date_range,
)

NOW = datetime(2026, 3, 15, 10, 30, tzinfo=UTC)


class TestIntentValidation:
    def test_minimal_intent_gets_defaults(self) -> None:
        intent = Intent.model_validate({"action": "sum", "entity": "price"})

        assert intent.limit == DEFAULT_LIMIT
        assert intent.filter == IntentFilter()
        assert intent.fact_type == "price"

    def test_unknown_keys_are_ignored(self) -> None:
        intent = Intent.model_validate(
            {"action": "list", "entity": "otp", "explanation": "x", "filter": {"mood": "happy"}}
        )
        assert intent.entity == "otp"

    @pytest.mark.parametrize(("raw", "expected"), [(0, 1), (-5, 1), (250, 100), (7, 7), (None, 20)])
    def test_limit_is_clamped(self, raw: int | None, expected: int) -> None:
        intent = Intent.model_validate({"action": "list", "entity": "price", "limit": raw})
        assert intent.limit == expected

    def test_boolean_limit_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Intent.model_validate({"action": "list", "entity": "price", "limit": True})

    @pytest.mark.parametrize("raw", [[5], {"n": 5}, "five", float("inf"), float("nan")])
    def test_non_numeric_limit_is_rejected(self, raw: object) -> None:
        with pytest.raises(ValidationError):
            Intent.model_validate({"action": "list", "entity": "price", "limit": raw})

    def test_unknown_action_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Intent.model_validate({"action": "delete", "entity": "price"})

    def test_action_is_normalized(self) -> None:
        assert Intent.model_validate({"action": " SUM ", "entity": "price"}).action == "sum"

    def test_unknown_entity_is_rejected(self) -> None:
        with pytest.raises(ValidationError, match="entity"):
            Intent.model_validate({"action": "list", "entity": "weather"})

    def test_email_entity(self) -> None:
        intent = Intent.model_validate({"action": "find", "entity": "email"})
        assert intent.targets_email
        assert intent.fact_type is None

    def test_filter_type_overrides_entity(self) -> None:
        intent = Intent.model_validate(
            {"action": "list", "entity": "merchant", "filter": {"type": "subscription"}}
        )
        assert intent.fact_type == "subscription"

    def test_unknown_filter_type_is_ignored(self) -> None:
        intent = Intent.model_validate(
            {"action": "list", "entity": "merchant", "filter": {"type": "weather"}}
        )
        assert intent.filter.type is None
        assert intent.fact_type == "merchant"

    def test_null_filter(self) -> None:
        intent = Intent.model_validate({"action": "count", "entity": "otp", "filter": None})
        assert intent.filter.merchant is None

    def test_blank_strings_become_none(self) -> None:
        intent_filter = IntentFilter.model_validate({"merchant": "  ", "keyword": ""})
        assert intent_filter.merchant is None
        assert intent_filter.keyword is None

    def test_to_dict_uses_wire_names(self) -> None:
        intent = Intent.model_validate(
            {"action": "sum", "entity": "price", "filter": {"dateFrom": "2026-03-01"}}
        )
        data = intent.to_dict()
        assert data["filter"]["dateFrom"].startswith("2026-03-01T00:00:00")
        assert "date_from" not in data["filter"]


class TestDateBounds:
    def test_date_only_bounds_cover_whole_days(self) -> None:
        intent_filter = IntentFilter.model_validate(
            {"dateFrom": "2026-03-01", "dateTo": "2026-03-10"}
        )
        assert intent_filter.date_from == datetime(2026, 3, 1, 0, 0, 0, tzinfo=UTC)
        assert intent_filter.date_to == datetime(2026, 3, 10, 23, 59, 59, tzinfo=UTC)

    def test_full_timestamps_are_kept(self) -> None:
        intent_filter = IntentFilter.model_validate({"dateFrom": "2026-03-01T08:00:00+05:30"})
        assert intent_filter.date_from == datetime(2026, 3, 1, 2, 30, tzinfo=UTC)

    def test_non_iso_date_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            IntentFilter.model_validate({"dateFrom": "last tuesday"})

    def test_non_string_date_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            IntentFilter.model_validate({"dateTo": 20260301})


class TestResolveDateRange:
    def test_current_month(self) -> None:
        start, end = resolve_date_range(IntentFilter(month="current"), now=NOW)

        assert start == datetime(2026, 3, 1, 0, 0, 0, tzinfo=UTC)
        assert end == datetime(2026, 3, 31, 23, 59, 59, tzinfo=UTC)

    def test_explicit_month(self) -> None:
        start, end = resolve_date_range(IntentFilter(month="2024-02"), now=NOW)

        assert start == datetime(2024, 2, 1, tzinfo=UTC)
        assert end == datetime(2024, 2, 29, 23, 59, 59, tzinfo=UTC)

    def test_month_wins_over_explicit_bounds(self) -> None:
        intent_filter = IntentFilter.model_validate(
            {"month": "2026-01", "dateFrom": "2025-01-01", "dateTo": "2025-12-31"}
        )
        start, _ = resolve_date_range(intent_filter, now=NOW)
        assert start == datetime(2026, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize("month", ["2026-13", "March", "2026-3"])
    def test_unusable_month_falls_back_to_bounds(self, month: str) -> None:
        intent_filter = IntentFilter.model_validate({"month": month, "dateFrom": "2026-02-01"})

        start, end = resolve_date_range(intent_filter, now=NOW)

        assert start == datetime(2026, 2, 1, tzinfo=UTC)
        assert end is None

    def test_no_bounds(self) -> None:
        assert resolve_date_range(IntentFilter(), now=NOW) == (None, None)

    def test_month_range_december(self) -> None:
        start, end = month_range(2025, 12)
        assert start == datetime(2025, 12, 1, tzinfo=UTC)
        assert end == datetime(2025, 12, 31, 23, 59, 59, tzinfo=UTC)
