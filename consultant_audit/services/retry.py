"""
Bounded retry with exponential backoff + jitter for external calls.

    delay = base_delay * 2**attempt * uniform(0.8, 1.2), capped at max_delay

Only failures classified as transient (timeouts, connection drops, 429, 5xx)
are retried; everything else propagates on the first attempt.
"""
import logging
import random
import time
from dataclasses import dataclass

import requests

from consultant_audit.config import RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY, RETRY_MAX_DELAY

logger = logging.getLogger('consultant_audit.services.retry')

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class TransientHTTPError(Exception):
    """A retryable HTTP status, raised from inside a retried call."""

    def __init__(self, status_code, url=''):
        self.status_code = status_code
        self.url = url
        super().__init__(f"HTTP {status_code} from {url}" if url else f"HTTP {status_code}")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = RETRY_MAX_DELAY

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay * (2 ** attempt) * (0.8 + random.random() * 0.4)
        return min(delay, self.max_delay)


def is_transient_request_error(exc: BaseException) -> bool:
    """Network-class failures worth another attempt."""
    if isinstance(exc, TransientHTTPError):
        return True
    return isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError))


def call_with_retry(func, policy: RetryPolicy, is_transient=is_transient_request_error,
                    on_retry=None, sleep=time.sleep):
    """
    Call func() until it succeeds, a non-transient error is raised, or
    policy.max_attempts is used up. The last error is re-raised.

    on_retry(attempt, max_attempts, exc, delay) is called before each sleep.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return func()
        except Exception as exc:
            if not is_transient(exc) or attempt >= attempts - 1:
                raise
            delay = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(attempt + 1, attempts, exc, delay)
            else:
                logger.warning("Transient failure (attempt %d/%d), retrying in %.1fs: %s",
                               attempt + 1, attempts, delay, exc)
            sleep(delay)
