"""Gmail message normalization.

Turns a ``messages.get(format=full)`` payload into a Message record:
case-insensitive header lookup, base64url body decoding, a depth-first
search for the first text/plain leaf, attachment detection, timestamp
selection, and the per-field length caps.
"""

import base64
import binascii
from collections.abc import Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

from mailfacts.core.logging import get_logger
from mailfacts.db.store import Message

logger = get_logger(__name__)

MAX_RECIPIENT_LENGTH = 512
MAX_SUBJECT_LENGTH = 998
MAX_SNIPPET_LENGTH = 512
MAX_BODY_BYTES = 65535

Part = dict[str, Any]


def get_header(headers: list[dict[str, str]], name: str) -> str:
    """Case-insensitive header lookup; returns the stripped value or ""."""
    wanted = name.lower()
    for header in headers:
        if header.get("name", "").lower() == wanted:
            return (header.get("value") or "").strip()
    return ""


def decode_base64url(data: str) -> str:
    """Decode Gmail's base64url body data, tolerating missing padding."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.warning("body_decode_failed", length=len(data))
        return ""


def find_part(part: Part | None, predicate: Callable[[Part], bool]) -> Part | None:
    """Depth-first search of a MIME tree for the first node matching ``predicate``."""
    if not part:
        return None
    if predicate(part):
        return part
    for child in part.get("parts") or []:
        found = find_part(child, predicate)
        if found is not None:
            return found
    return None


def _is_plain_text_leaf(part: Part) -> bool:
    return part.get("mimeType") == "text/plain" and bool((part.get("body") or {}).get("data"))


def extract_plain_text(payload: Part | None) -> str:
    """Body of the first text/plain leaf in DFS order, or "" when there is none.

    HTML-only messages yield "".
    """
    leaf = find_part(payload, _is_plain_text_leaf)
    if leaf is None:
        return ""
    return decode_base64url(leaf["body"]["data"])


def has_attachments(payload: Part | None) -> bool:
    """True if any top-level part has a filename or an attachment disposition."""
    if not payload:
        return False
    for part in payload.get("parts") or []:
        if part.get("filename"):
            return True
        disposition = get_header(part.get("headers") or [], "Content-Disposition")
        if "attachment" in disposition.lower():
            return True
    return False


def truncate_bytes(text: str, max_bytes: int) -> str:
    """Cut ``text`` to at most ``max_bytes`` of UTF-8 without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def parse_timestamp(internal_date: str | int | None, date_header: str) -> datetime:
    """Pick the message time: internalDate (epoch ms), then the Date header, then now."""
    if internal_date not in (None, ""):
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
        except (TypeError, ValueError, OverflowError, OSError):
            logger.debug("internal_date_unparseable", internal_date=str(internal_date)[:32])

    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)

    return datetime.now(UTC)


def normalize_message(raw: dict[str, Any], user_id: str) -> Message:
    """Build a Message record from a full Gmail message payload.

    Raises:
        ValueError: If the payload has no message id
    """
    provider_message_id = raw.get("id")
    if not provider_message_id:
        raise ValueError("Gmail message payload has no id")

    payload = raw.get("payload") or {}
    headers = payload.get("headers") or []

    return Message(
        user_id=user_id,
        provider_message_id=provider_message_id,
        thread_id=raw.get("threadId"),
        history_id=str(raw["historyId"]) if raw.get("historyId") else None,
        sender=get_header(headers, "From"),
        recipient=get_header(headers, "To")[:MAX_RECIPIENT_LENGTH],
        subject=get_header(headers, "Subject")[:MAX_SUBJECT_LENGTH],
        body=truncate_bytes(extract_plain_text(payload), MAX_BODY_BYTES),
        snippet=(raw.get("snippet") or "")[:MAX_SNIPPET_LENGTH],
        timestamp=parse_timestamp(raw.get("internalDate"), get_header(headers, "Date")),
        labels=list(raw.get("labelIds") or []),
        has_attachments=has_attachments(payload),
        size_estimate=int(raw.get("sizeEstimate") or 0),
    )
