"""Natural-language questions over extracted facts."""

from mailfacts.query.engine import IntentEngine, QueryResult, fallback_answer
from mailfacts.query.intent import Intent, IntentFilter, resolve_date_range

__all__ = [
    "Intent",
    "IntentEngine",
    "IntentFilter",
    "QueryResult",
    "fallback_answer",
    "resolve_date_range",
]
