"""Google OAuth2 refresh-token exchange.

The initial consent flow happens outside this service; users arrive with a
refresh token. This module trades that refresh token for a short-lived access
token when the sync engine needs one.

Usage:
    oauth = GoogleOAuthClient(client_id, client_secret)
    grant = oauth.refresh_access_token(refresh_token)
    grant.access_token, grant.expires_at
"""

import os
import random
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import requests

from mailfacts.core.errors import AuthenticationError
from mailfacts.core.logging import get_logger

logger = get_logger(__name__)

CLIENT_SECRET_ENV = "GOOGLE_CLIENT_SECRET"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Retry configuration for transient network failures
OAUTH_MAX_RETRIES = 3
OAUTH_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Google access tokens last an hour; used when the response omits expires_in
DEFAULT_EXPIRES_IN = 3600


@dataclass
class TokenGrant:
    """A freshly issued access token and its absolute expiry (UTC)."""

    access_token: str
    expires_at: datetime


class GoogleOAuthClient:
    """Exchanges refresh tokens for access tokens at Google's token endpoint."""

    def __init__(
        self,
        client_id: str,
        client_secret: str | None = None,
        token_uri: str = DEFAULT_TOKEN_URI,
        timeout: int = 30,
    ):
        self.client_id = client_id
        self.client_secret = (
            client_secret if client_secret is not None else os.environ.get(CLIENT_SECRET_ENV, "")
        )
        self.token_uri = token_uri
        self.timeout = timeout

    def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Trade a refresh token for a new access token.

        Raises:
            AuthenticationError: If the refresh token is empty or rejected
                (revoked, expired, wrong client), or the endpoint stays
                unreachable after retries
        """
        if not refresh_token:
            raise AuthenticationError("No refresh token available; the user must reconnect Gmail")

        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        response = self._post_with_retry(payload)

        if response.status_code >= 400:
            error_code = ""
            try:
                error_code = response.json().get("error", "")
            except ValueError:
                pass
            logger.warning(
                "token_refresh_rejected",
                status_code=response.status_code,
                error_code=error_code,
            )
            raise AuthenticationError(
                f"Token refresh rejected ({response.status_code} {error_code or 'unknown'}). "
                "The user must reconnect Gmail to issue a new refresh token."
            )

        data = response.json()
        access_token = data.get("access_token", "")
        if not access_token:
            raise AuthenticationError("Token endpoint returned no access_token")

        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        expires_at = datetime.now(UTC) + timedelta(seconds=expires_in)
        logger.info("token_refreshed", expires_in=expires_in)
        return TokenGrant(access_token=access_token, expires_at=expires_at)

    def _post_with_retry(self, payload: dict[str, str]) -> requests.Response:
        last_error: Exception | None = None

        for attempt in range(OAUTH_MAX_RETRIES):
            try:
                response = requests.post(self.token_uri, data=payload, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                last_error = e
            else:
                if response.status_code < 500:
                    return response
                last_error = AuthenticationError(
                    f"Token endpoint returned {response.status_code}"
                )

            if attempt < OAUTH_MAX_RETRIES - 1:
                delay = OAUTH_RETRY_DELAYS[attempt]
                actual_delay = delay + delay * 0.2 * (2 * random.random() - 1)
                logger.warning(
                    "token_refresh_retrying",
                    attempt=attempt + 1,
                    max_retries=OAUTH_MAX_RETRIES,
                    delay=actual_delay,
                    error=str(last_error),
                )
                time.sleep(actual_delay)

        logger.error("token_refresh_failed", max_retries=OAUTH_MAX_RETRIES, error=str(last_error))
        raise AuthenticationError(
            f"Token refresh failed after {OAUTH_MAX_RETRIES} attempts: {last_error}"
        ) from last_error
