"""Fact extraction: the record_facts contract and the Claude extractor."""

from mailfacts.extraction.extractor import FactExtractor
from mailfacts.extraction.prompts import (
    FACT_CONTRACT_VERSION,
    FACT_TYPES,
    RECORD_FACTS_TOOL,
    build_message_content,
)

__all__ = [
    "FACT_CONTRACT_VERSION",
    "FACT_TYPES",
    "RECORD_FACTS_TOOL",
    "FactExtractor",
    "build_message_content",
]
