"""Prompts and tool definition for question parsing and answer narration."""

from __future__ import annotations

import json
from datetime import date
from typing import Any

from mailfacts.extraction.prompts import FACT_TYPES
from mailfacts.query.intent import EMAIL_ENTITY, MAX_LIMIT, MIN_LIMIT

SUBMIT_INTENT_TOOL: dict[str, Any] = {
    "name": "submit_intent",
    "description": "Submit the structured intent of the user's question",
    "input_schema": {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": ["sum", "count", "list", "find", "summarize"],
            },
            "entity": {
                "type": "string",
                "enum": [*sorted(FACT_TYPES), EMAIL_ENTITY],
                "description": "Fact type to query, or 'email' for the messages themselves",
            },
            "filter": {
                "type": "object",
                "properties": {
                    "merchant": {"type": ["string", "null"]},
                    "keyword": {"type": ["string", "null"]},
                    "type": {"type": ["string", "null"]},
                    "month": {
                        "type": ["string", "null"],
                        "description": "'current' or YYYY-MM",
                    },
                    "dateFrom": {"type": ["string", "null"], "description": "ISO-8601"},
                    "dateTo": {"type": ["string", "null"], "description": "ISO-8601"},
                },
            },
            "limit": {"type": "integer", "minimum": MIN_LIMIT, "maximum": MAX_LIMIT},
        },
        "required": ["action", "entity"],
    },
}

_INTENT_SYSTEM_PROMPT = """\
You turn questions about a person's email into a structured query.
Today's date is {today}.

Call submit_intent exactly once.

- action: sum (add up amounts), count, list, find (a specific item), summarize.
- entity: the fact type the question is about. Use "email" only when the
  question is about the messages themselves (e.g. "emails from last week").
- filter.month: "current" for "this month", or YYYY-MM for a named month.
  Use dateFrom/dateTo for any other period.
- filter.merchant: a shop, brand or service name when one is mentioned.
- filter.keyword: any other distinguishing word.
- limit: how many results to return (default 20).
"""

_ANSWER_SYSTEM_PROMPT = """\
You answer questions about a person's email using only the data provided.
Never invent values that are not in the data.
Keep the answer under 3 sentences unless the user asked for a list.
If the data is empty, say that nothing matching was found.
Format money amounts with the {currency_symbol} symbol and two decimals.
"""


def build_intent_system_prompt(today: date) -> str:
    return _INTENT_SYSTEM_PROMPT.format(today=today.isoformat())


def build_answer_system_prompt(currency_symbol: str) -> str:
    return _ANSWER_SYSTEM_PROMPT.format(currency_symbol=currency_symbol)


def build_answer_content(question: str, intent: dict[str, Any], snippet: dict[str, Any]) -> str:
    """User turn for narration: the question, the intent and the data snippet."""
    return "\n\n".join(
        [
            f"Question: {question}",
            f"Intent: {json.dumps(intent, default=str)}",
            f"Data: {json.dumps(snippet, default=str, ensure_ascii=False)}",
        ]
    )
