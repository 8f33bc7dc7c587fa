"""Mailbox fact extraction and natural-language query pipeline."""

__version__ = "0.1.0"
