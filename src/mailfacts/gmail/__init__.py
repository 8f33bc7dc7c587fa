"""Gmail API access and message normalization.

Usage:
    from mailfacts.gmail import GmailClient, normalize_message

    client = GmailClient(access_token)
    message = normalize_message(client.get_message(message_id), user_id="u1")
"""

from mailfacts.gmail.client import GmailClient, HistoryPage
from mailfacts.gmail.normalize import extract_plain_text, has_attachments, normalize_message

__all__ = [
    "GmailClient",
    "HistoryPage",
    "extract_plain_text",
    "has_attachments",
    "normalize_message",
]
