"""Gmail API client with retry logic and error handling.

This module provides the HTTP client the sync engine uses to discover and
fetch messages:
- Automatic retry with exponential backoff and jitter for 5xx and 429
- Retry-After support for 429 responses
- Proactive pacing through a shared token bucket
- Typed errors, including HistoryExpiredError for a stale history cursor

The client is synchronous. The sync engine runs its calls in worker threads
so one batch of message fetches proceeds concurrently.

Usage:
    from mailfacts.gmail.client import GmailClient

    client = GmailClient(access_token)
    page = client.list_history("123456", max_results=500)
    raw = client.get_message(page.message_ids[0])
"""

import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import requests

from mailfacts.core.errors import (
    AuthenticationError,
    GmailAPIError,
    HistoryExpiredError,
    RateLimitExceeded,
)
from mailfacts.core.logging import get_logger
from mailfacts.core.rate_limiter import get_bucket

logger = get_logger(__name__)

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Gmail allows 250 quota units per user per second; messages.get costs 5
GMAIL_RATE = 10.0
GMAIL_CAPACITY = 10


@dataclass
class HistoryPage:
    """Result of a history listing: added message IDs and the new cursor."""

    message_ids: list[str] = field(default_factory=list)
    history_id: str = ""


class GmailClient:
    """Gmail API client bound to one user's access token.

    Attributes:
        base_url: Gmail API base URL for the authenticated user
        max_retries: Maximum number of retry attempts
        retry_delays: Delay (seconds) before each retry
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = GMAIL_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        timeout: float = 30.0,
    ):
        if not access_token:
            raise AuthenticationError("GmailClient requires a non-empty access token")

        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            }
        )
        self._rate_bucket = get_bucket(name="gmail_api", rate=GMAIL_RATE, capacity=GMAIL_CAPACITY)

    def _make_url(self, endpoint: str) -> str:
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _handle_error_response(self, response: requests.Response, endpoint: str) -> None:
        """Raise a typed error for a non-retryable (or exhausted) error response.

        Raises:
            AuthenticationError: 401
            RateLimitExceeded: 429
            GmailAPIError: Everything else
        """
        try:
            error_info = response.json().get("error", {})
            error_message = error_info.get("message", response.text)
            errors = error_info.get("errors") or [{}]
            error_code = errors[0].get("reason") or error_info.get("status", "unknown")
        except (ValueError, AttributeError):
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "gmail_api_error",
            endpoint=endpoint,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message[:200],
        )

        if response.status_code == 401:
            raise AuthenticationError(
                f"Gmail rejected the access token (401): {error_message}. "
                "The token may be revoked; the user must reconnect Gmail."
            )
        if response.status_code == 403:
            raise GmailAPIError(
                f"Permission denied (403): {error_message}. "
                "Check that the gmail.readonly scope was granted.",
                status_code=403,
                error_code=error_code,
            )
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            raise RateLimitExceeded(
                f"Gmail rate limit exceeded (429). Retry after: {retry_after} seconds."
            )
        raise GmailAPIError(
            f"Gmail API error ({response.status_code}) on {endpoint}: {error_message}",
            status_code=response.status_code,
            error_code=error_code,
        )

    def _should_retry(self, response: requests.Response, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return response.status_code == 429 or 500 <= response.status_code < 600

    def _get_retry_delay(self, response: requests.Response, attempt: int) -> float:
        """Delay before the next attempt, with ±20% jitter.

        A 429 with a numeric Retry-After header uses that value as the base.
        """
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    base_delay = float(retry_after)
                    return base_delay + base_delay * 0.2 * (2 * random.random() - 1)
                except ValueError:
                    pass

        base_delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
        return base_delay + base_delay * 0.2 * (2 * random.random() - 1)

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an HTTP request to the Gmail API with retry logic.

        Returns:
            Parsed JSON response

        Raises:
            GmailAPIError: For API errors (4xx, 5xx) and exhausted network retries
            RateLimitExceeded: When rate limits cannot be recovered
            AuthenticationError: When the access token is rejected
        """
        url = self._make_url(endpoint)
        last_response = None

        for attempt in range(self.max_retries + 1):
            try:
                self._rate_bucket.consume_sync()

                response = self.session.request(
                    method=method,
                    url=url,
                    params=params,
                    timeout=self.timeout,
                )
                last_response = response

                if response.status_code < 400:
                    if response.status_code == 204:
                        return {}
                    return response.json()

                if self._should_retry(response, attempt):
                    delay = self._get_retry_delay(response, attempt)
                    logger.warning(
                        "gmail_request_retrying",
                        endpoint=endpoint,
                        status_code=response.status_code,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue

                self._handle_error_response(response, endpoint)

            except requests.exceptions.Timeout:
                if attempt < self.max_retries:
                    delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
                    logger.warning(
                        "gmail_request_timeout_retrying",
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue
                raise GmailAPIError(
                    f"Request to {endpoint} timed out after {self.timeout}s "
                    f"and {self.max_retries} retries."
                ) from None

            except requests.exceptions.ConnectionError as e:
                if attempt < self.max_retries:
                    delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
                    logger.warning(
                        "gmail_connection_error_retrying",
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        error=str(e),
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue
                raise GmailAPIError(
                    f"Connection to Gmail failed: {e}. Check network connectivity and try again."
                ) from e

        if last_response is not None:
            self._handle_error_response(last_response, endpoint)

        raise GmailAPIError(f"Request to {endpoint} failed after {self.max_retries} retries")

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params)

    # =========================================================================
    # Mailbox operations
    # =========================================================================

    def list_history(self, start_history_id: str, max_results: int = 500) -> HistoryPage:
        """List messages added since a history cursor.

        Returns:
            HistoryPage with the added message IDs (in history order) and the
            mailbox's current historyId

        Raises:
            HistoryExpiredError: If Gmail no longer has history for the cursor (404)
        """
        params = {
            "startHistoryId": start_history_id,
            "historyTypes": "messageAdded",
            "maxResults": max_results,
        }
        try:
            data = self.get("/history", params=params)
        except GmailAPIError as e:
            if e.status_code == 404:
                logger.info("history_cursor_expired", start_history_id=start_history_id)
                raise HistoryExpiredError(
                    f"History cursor {start_history_id} is no longer valid",
                    start_history_id=start_history_id,
                ) from e
            raise

        message_ids: list[str] = []
        for record in data.get("history", []):
            for added in record.get("messagesAdded", []):
                message_id = (added.get("message") or {}).get("id")
                if message_id:
                    message_ids.append(message_id)

        return HistoryPage(
            message_ids=message_ids,
            history_id=str(data.get("historyId") or start_history_id),
        )

    def list_message_ids(self, after: datetime, max_results: int = 500) -> list[str]:
        """List IDs of messages received after ``after`` (Gmail ``after:`` search)."""
        params = {"q": f"after:{int(after.timestamp())}", "maxResults": max_results}
        data = self.get("/messages", params=params)
        return [m["id"] for m in data.get("messages", []) if m.get("id")]

    def get_message(self, message_id: str) -> dict[str, Any]:
        """Fetch one message with its full MIME payload."""
        return self.get(f"/messages/{message_id}", params={"format": "full"})

    def close(self) -> None:
        self.session.close()
