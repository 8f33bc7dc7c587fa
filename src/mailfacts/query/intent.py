"""Structured intent parsed from a natural-language question.

The NLU service returns a JSON object; these models validate it rather than
trusting it. Unknown keys are ignored, ``limit`` is clamped instead of
rejected, and explicit date bounds must be ISO-8601.
"""

from __future__ import annotations

import calendar
from datetime import UTC, datetime
from typing import Any, Literal

import regex
from pydantic import BaseModel, ConfigDict, Field, field_validator

from mailfacts.extraction.prompts import FACT_TYPES

EMAIL_ENTITY = "email"
DEFAULT_LIMIT = 20
MIN_LIMIT = 1
MAX_LIMIT = 100

Action = Literal["sum", "count", "list", "find", "summarize"]

MONTH_PATTERN = r"^(\d{4})-(\d{2})$"
DATE_ONLY_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


def _matches(pattern: str, value: str) -> regex.Match | None:
    return regex.match(pattern, value, timeout=1)


def _parse_bound(value: Any, end_of_day: bool) -> datetime | None:
    if value is None or isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if _matches(DATE_ONLY_PATTERN, text):
            text += "T23:59:59" if end_of_day else "T00:00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"expected an ISO-8601 date string, got {type(value).__name__}")

    if dt is not None and dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


class IntentFilter(BaseModel):
    """Filter predicate of an intent. Every field is optional."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    merchant: str | None = None
    keyword: str | None = None
    type: str | None = None
    month: str | None = None
    date_from: datetime | None = Field(default=None, alias="dateFrom")
    date_to: datetime | None = Field(default=None, alias="dateTo")

    @field_validator("merchant", "keyword", "month", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("type", mode="before")
    @classmethod
    def known_fact_type_only(cls, v: Any) -> str | None:
        """An unknown type override is ignored rather than rejected."""
        if isinstance(v, str) and v.strip() in FACT_TYPES:
            return v.strip()
        return None

    @field_validator("date_from", mode="before")
    @classmethod
    def parse_date_from(cls, v: Any) -> datetime | None:
        return _parse_bound(v, end_of_day=False)

    @field_validator("date_to", mode="before")
    @classmethod
    def parse_date_to(cls, v: Any) -> datetime | None:
        return _parse_bound(v, end_of_day=True)


class Intent(BaseModel):
    """What the user asked for: an action over one entity, filtered and limited."""

    model_config = ConfigDict(extra="ignore")

    action: Action
    entity: str
    filter: IntentFilter = Field(default_factory=IntentFilter)
    limit: int = DEFAULT_LIMIT

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("entity", mode="before")
    @classmethod
    def validate_entity(cls, v: Any) -> str:
        if not isinstance(v, str):
            raise ValueError("entity must be a string")
        entity = v.strip()
        if entity != EMAIL_ENTITY and entity not in FACT_TYPES:
            raise ValueError(f"entity must be a fact type or '{EMAIL_ENTITY}', got '{entity}'")
        return entity

    @field_validator("filter", mode="before")
    @classmethod
    def null_filter(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v: Any) -> int:
        if v is None:
            return DEFAULT_LIMIT
        if isinstance(v, bool) or not isinstance(v, int | float | str):
            raise ValueError("limit must be a number")
        try:
            limit = int(v)
        except (ValueError, OverflowError) as e:
            raise ValueError(f"limit must be a whole number, got {v!r}") from e
        return max(MIN_LIMIT, min(MAX_LIMIT, limit))

    @property
    def targets_email(self) -> bool:
        return self.entity == EMAIL_ENTITY

    @property
    def fact_type(self) -> str | None:
        """Fact type to filter on; ``filter.type`` overrides the entity."""
        if self.targets_email:
            return None
        return self.filter.type or self.entity

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def month_range(year: int, month: int) -> tuple[datetime, datetime]:
    """First and last second of a calendar month, in UTC."""
    last_day = calendar.monthrange(year, month)[1]
    return (
        datetime(year, month, 1, 0, 0, 0, tzinfo=UTC),
        datetime(year, month, last_day, 23, 59, 59, tzinfo=UTC),
    )


def resolve_date_range(
    intent_filter: IntentFilter, now: datetime | None = None
) -> tuple[datetime | None, datetime | None]:
    """Effective closed date interval for a filter.

    ``month="current"`` is the month containing ``now``; ``YYYY-MM`` is that
    month; anything else uses the explicit bounds, either of which may be open.
    """
    month = intent_filter.month
    if month:
        if month.lower() == "current":
            now = now or datetime.now(UTC)
            return month_range(now.year, now.month)

        match = _matches(MONTH_PATTERN, month)
        if match and 1 <= int(match.group(2)) <= 12:
            return month_range(int(match.group(1)), int(match.group(2)))

    return intent_filter.date_from, intent_filter.date_to
