"""Retry policy for downstream HTTP calls.

A call is retried when the integration answers 429/5xx or the connection
fails. Every other HTTP error, and the last transient one, is raised to
the dispatcher, which turns it into a failed DispatchResult.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a dispatcher retries one request."""

    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 10.0
    jitter: float = 0.3  # fraction of the delay, applied +/-

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code in RETRYABLE_STATUS_CODES
        return isinstance(exc, (httpx.TransportError, ConnectionError))

    def delay(self, attempt: int, response: httpx.Response | None = None) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based).

        A numeric Retry-After from the integration wins over the computed
        backoff, capped at ``max_delay``.
        """
        if response is not None:
            retry_after = response.headers.get("Retry-After", "")
            if retry_after.strip().isdigit():
                return min(float(retry_after), self.max_delay)

        base = min(self.base_delay * (2**attempt), self.max_delay)
        spread = base * self.jitter
        return max(0.0, base + random.uniform(-spread, spread))


def send_with_retry(
    policy: RetryPolicy,
    dispatcher_id: str,
    request: Callable[[], httpx.Response],
) -> httpx.Response:
    """Run ``request`` and raise_for_status(), retrying transient failures."""
    attempt = 0
    while True:
        try:
            response = request()
            response.raise_for_status()
            return response
        except (httpx.HTTPError, ConnectionError) as e:
            if attempt >= policy.max_retries or not policy.is_retryable(e):
                raise
            response = e.response if isinstance(e, httpx.HTTPStatusError) else None
            wait = policy.delay(attempt, response)
            attempt += 1
            logger.warning(
                "%s: retry %d/%d after %s, waiting %.1fs",
                dispatcher_id,
                attempt,
                policy.max_retries,
                f"HTTP {response.status_code}" if response is not None else type(e).__name__,
                wait,
            )
            time.sleep(wait)
