"""Custom exception types for mailfacts.

Error messages should say what failed, where, why, and how to fix it when a
fix is within the operator's reach.
"""


class MailfactsError(Exception):
    """Base exception for all mailfacts errors."""

    pass


class ConfigValidationError(MailfactsError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailfactsError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class VaultKeyError(MailfactsError):
    """Raised when the credential vault key is missing or too short."""

    pass


class AuthenticationError(MailfactsError):
    """Raised when provider credentials are missing, revoked, or cannot be refreshed."""

    pass


class GmailAPIError(MailfactsError):
    """Raised when the Gmail API returns an error.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error reason from the Gmail error payload (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class HistoryExpiredError(GmailAPIError):
    """Raised when a stored history cursor is no longer accepted (HTTP 404).

    The sync engine catches this and falls back to time-window discovery.
    """

    def __init__(self, message: str, start_history_id: str | None = None):
        super().__init__(message, status_code=404, error_code="historyExpired")
        self.start_history_id = start_history_id


class RateLimitExceeded(MailfactsError):
    """Raised when API rate limits are exceeded and cannot be recovered.

    Raised when the rate limiter would require an excessive wait time
    (>20 seconds) rather than blocking indefinitely.
    """

    pass


class DatabaseError(MailfactsError):
    """Raised when SQLite operations fail."""

    pass


class UserNotFoundError(MailfactsError):
    """Raised when an operation references a user that does not exist."""

    def __init__(self, user_id: str):
        super().__init__(f"User '{user_id}' not found")
        self.user_id = user_id


class ExtractionError(MailfactsError):
    """Raised when fact extraction for a single message fails.

    Attributes:
        message_id: Store ID of the message being processed
    """

    def __init__(self, message: str, message_id: int | None = None):
        super().__init__(message)
        self.message_id = message_id


class QueryError(MailfactsError):
    """Base for query failures that carry an HTTP-style status code."""

    status_code = 500

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.details = details


class InvalidQueryError(QueryError):
    """Raised when a question is empty or too long."""

    status_code = 400


class IntentParseError(QueryError):
    """Raised when a question cannot be turned into a structured intent."""

    status_code = 422

    def __init__(self, message: str = "Could not understand query", details: str | None = None):
        super().__init__(message, details)


class QueryExecutionError(QueryError):
    """Raised when the fact store query behind an intent fails."""

    status_code = 500

    def __init__(self, message: str = "Query execution failed", details: str | None = None):
        super().__init__(message, details)
