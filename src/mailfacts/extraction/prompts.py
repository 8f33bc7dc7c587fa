"""Prompt and tool definition for per-message fact extraction.

The model is forced to call ``record_facts``; its input is the fact list.
Bump FACT_CONTRACT_VERSION whenever the tool schema changes shape so logged
requests can be told apart.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mailfacts.db.store import Message

FACT_CONTRACT_VERSION = "1"

# Fact type -> metadata keys the model is asked to fill
FACT_TYPE_METADATA: dict[str, tuple[str, ...]] = {
    "price": ("currency", "rawText", "merchant"),
    "merchant": ("domain", "category"),
    "otp": ("expiresInSeconds", "service"),
    "flight_pnr": ("airline", "from", "to", "departure"),
    "flight_route": ("from", "to", "airline"),
    "job_company": ("role", "jobBoard"),
    "job_status": ("company", "role", "stage"),
    "date": ("context", "format"),
    "tracking_num": ("carrier", "url"),
    "subscription": ("service", "billingCycle", "amount"),
    "sender_domain": ("domain",),
    "custom": ("description",),
}

FACT_TYPES = frozenset(FACT_TYPE_METADATA)

RECORD_FACTS_TOOL: dict[str, Any] = {
    "name": "record_facts",
    "description": "Record every fact explicitly stated in the email",
    "input_schema": {
        "type": "object",
        "properties": {
            "facts": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "type": {"type": "string", "enum": sorted(FACT_TYPES)},
                        "value": {
                            "type": "string",
                            "description": (
                                "Canonical value. Amounts as plain decimals (e.g. '349.00'), "
                                "codes without surrounding text"
                            ),
                        },
                        "confidence": {"type": "number", "minimum": 0.0, "maximum": 1.0},
                        "metadata": {
                            "type": "object",
                            "description": "Type-specific fields (see system prompt)",
                        },
                    },
                    "required": ["type", "value", "confidence"],
                },
            },
        },
        "required": ["facts"],
    },
}


def _metadata_lines() -> str:
    return "\n".join(
        f'- "{fact_type}": {{ {", ".join(keys)} }}'
        for fact_type, keys in FACT_TYPE_METADATA.items()
    )


EXTRACTION_SYSTEM_PROMPT = f"""You extract structured facts from a single email for a personal \
email intelligence service.

Call record_facts exactly once with every meaningful fact in the email.

Fact types and their metadata fields:
{_metadata_lines()}

job_status.stage is one of: applied, interview, offer, rejected.

Rules:
- Only extract what the email explicitly states. Never invent values.
- price values are plain decimal numbers without currency symbols (e.g. "349.00").
- otp values are the code only (e.g. "483920").
- Several facts of the same type are allowed (e.g. two prices on one receipt).
- Confidence: 0.9+ for explicit data, 0.5-0.8 for inferred, below 0.5 if uncertain.
- Record an empty list when nothing meaningful is present.
"""


def build_message_content(message: Message, body_char_limit: int) -> str:
    """Bounded textual representation of a message sent for extraction."""
    timestamp = message.timestamp.isoformat() if message.timestamp else ""
    return "\n".join(
        [
            f"From: {message.sender}",
            f"Subject: {message.subject}",
            f"Date: {timestamp}",
            "",
            message.body[:body_char_limit],
        ]
    )
