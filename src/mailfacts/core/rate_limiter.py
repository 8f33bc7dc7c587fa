"""Token bucket rate limiting for outbound API calls.

The Gmail client runs its blocking requests in worker threads, so the bucket
exposes a thread-safe synchronous ``consume_sync``. Buckets are shared per
service name through ``get_bucket`` so every client for the same API draws
from one budget.

Standard rates:
- gmail_api: 10 requests per second (well under the per-user quota)
"""

import threading
import time

from mailfacts.core.errors import RateLimitExceeded
from mailfacts.core.logging import get_logger

logger = get_logger(__name__)

# Waits longer than this are treated as a quota problem, not a pacing delay
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. When no
    tokens are available the caller sleeps until one has been refilled.

    Example:
        limiter = TokenBucket(rate=10.0, capacity=10)
        limiter.consume_sync()  # blocks if needed
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
    ):
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def consume_sync(self, tokens: int = 1) -> bool:
        """Consume tokens, sleeping until they are available.

        Returns:
            True once the tokens were consumed

        Raises:
            RateLimitExceeded: If more tokens than the capacity are requested,
                or the wait would exceed MAX_WAIT_SECONDS
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

        with self.lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            required_tokens = tokens - self.tokens
            wait_time = required_tokens / self.rate

            if wait_time > MAX_WAIT_SECONDS:
                logger.warning(
                    "rate_limit_excessive_wait",
                    wait_time=wait_time,
                    tokens_needed=required_tokens,
                )
                raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")

            # Reserve the tokens now so concurrent callers queue behind us
            self.tokens -= tokens

        logger.debug("rate_limit_wait", wait_time=wait_time)
        time.sleep(wait_time)
        return True

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


_buckets: dict[str, TokenBucket] = {}
_buckets_lock = threading.Lock()


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create the shared token bucket for ``name``.

    ``rate`` and ``capacity`` only apply when the bucket is first created.
    """
    with _buckets_lock:
        if name not in _buckets:
            _buckets[name] = TokenBucket(rate=rate, capacity=capacity)
        return _buckets[name]


def reset_buckets() -> None:
    """Drop all shared buckets (for tests)."""
    with _buckets_lock:
        _buckets.clear()
