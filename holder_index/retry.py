import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from requests.exceptions import ConnectionError, HTTPError, Timeout
from urllib3.exceptions import ProtocolError
from web3.exceptions import Web3RPCError

from holder_index.errors import ChainReadError, LogRangeTooLargeError, RateLimitedError

logger = logging.getLogger(__name__)

RATE_LIMIT = "rate_limit"
TRANSIENT = "transient"
RANGE_TOO_LARGE = "range_too_large"
FATAL = "fatal"

_RATE_LIMIT_MARKERS = ("429", "too many requests", "rate limit", "compute units", "exceeded its throughput")
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "connection reset",
    "internal error",
)
_RANGE_MARKERS = ("log response size exceeded", "more than 10000 results", "query returned more than")
_SUGGESTED_RANGE = re.compile(r"\[0x([0-9a-f]+),\s*0x([0-9a-f]+)\]", re.IGNORECASE)


def suggested_range(message):
    match = _SUGGESTED_RANGE.search(message)
    if not match:
        return None
    return int(match.group(1), 16), int(match.group(2), 16)


def classify_error(exc):
    """Map a web3 / requests / urllib3 exception onto a retry category."""
    if isinstance(exc, RateLimitedError):
        return RATE_LIMIT
    if isinstance(exc, LogRangeTooLargeError):
        return RANGE_TOO_LARGE
    if isinstance(exc, HTTPError):
        status = getattr(exc.response, "status_code", None)
        if status == 429:
            return RATE_LIMIT
        if status in (500, 502, 503, 504):
            return TRANSIENT
        return FATAL
    if isinstance(exc, (ConnectionError, Timeout, ProtocolError, TimeoutError)):
        return TRANSIENT
    if isinstance(exc, Web3RPCError):
        msg = str(exc).lower()
        if any(m in msg for m in _RANGE_MARKERS):
            return RANGE_TOO_LARGE
        if any(m in msg for m in _RATE_LIMIT_MARKERS):
            return RATE_LIMIT
        if any(m in msg for m in _TRANSIENT_MARKERS):
            return TRANSIENT
    return FATAL


@dataclass
class RetryPolicy:
    """Bounded retry with capped exponential backoff.

    Rate-limit errors back off `rate_limit_multiplier` times longer than
    other transient errors; once `max_attempts` is spent on a rate-limit
    error a RateLimitedError is raised instead of the provider error.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    rate_limit_multiplier: float = 4.0
    max_delay: float = 10.0
    sleep: Callable[[float], None] = time.sleep

    def delay_for(self, attempt, category):
        delay = self.base_delay * (2 ** (attempt - 1))
        if category == RATE_LIMIT:
            delay *= self.rate_limit_multiplier
        return min(delay, self.max_delay)

    def call(self, fn, description: Optional[str] = None):
        what = description or getattr(fn, "__name__", "call")
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except Exception as e:
                category = classify_error(e)
                if category == RANGE_TOO_LARGE:
                    if isinstance(e, LogRangeTooLargeError):
                        raise
                    raise LogRangeTooLargeError(str(e), suggested_range(str(e))) from e
                if category == FATAL:
                    raise
                if attempt == self.max_attempts:
                    if category == RATE_LIMIT:
                        raise RateLimitedError(f"{what}: rate limited after {attempt} attempts: {e}") from e
                    raise ChainReadError(f"{what}: failed after {attempt} attempts: {e}") from e
                wait = self.delay_for(attempt, category)
                logger.warning(f"{what}: attempt {attempt}/{self.max_attempts} failed ({category}): {e}; retrying in {wait:.2f}s")
                self.sleep(wait)
