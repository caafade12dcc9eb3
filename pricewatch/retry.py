"""Retry with exponential backoff for async pipeline steps.

Two presets: SCRAPING_RETRY for browser and network calls, tuned for flaky
shops, and DATABASE_RETRY for transient database errors.
"""

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, FrozenSet, Optional

import sqlalchemy.exc

from pricewatch.errors import BrowserError, SessionNotFoundError

logger = logging.getLogger("pricewatch.retry")


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    max_retries: int
    base_delay: float
    max_delay: float
    jitter: float = 0.0
    attempt_timeout: Optional[float] = None
    no_retry_status: FrozenSet[int] = field(default_factory=frozenset)
    retry_on: Callable[["RetryPolicy", BaseException], bool] = None

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based), capped, with jitter."""
        delay = min(self.max_delay, self.base_delay * (2 ** attempt))
        if self.jitter:
            delay *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return max(0.0, delay)

    def is_retryable(self, exc: BaseException) -> bool:
        if self.retry_on is None:
            return True
        return self.retry_on(self, exc)

    async def run(self, fn: Callable[..., Any], *args, on_retry: Optional[Callable[[BaseException], Any]] = None, **kwargs) -> Any:
        """Call ``fn`` until it succeeds or the retry budget is spent.

        ``fn`` may be a coroutine function or a plain callable. After the last
        attempt the original exception propagates unchanged.

        Args:
            fn: The step to run
            on_retry: Called with the exception before each retry, e.g. to
                roll back a database session
        """
        attempt = 0
        while True:
            try:
                result = fn(*args, **kwargs)
                if inspect.isawaitable(result):
                    if self.attempt_timeout:
                        result = await asyncio.wait_for(result, self.attempt_timeout)
                    else:
                        result = await result
                return result
            except Exception as exc:  # pylint: disable=broad-exception-caught
                if attempt >= self.max_retries or not self.is_retryable(exc):
                    raise
                wait_time = self.delay(attempt)
                logger.warning(
                    "%s step failed (attempt %d/%d): %s; retrying in %.1fs",
                    self.name, attempt + 1, self.max_retries + 1, exc, wait_time,
                )
                if on_retry is not None:
                    outcome = on_retry(exc)
                    if inspect.isawaitable(outcome):
                        await outcome
                await asyncio.sleep(wait_time)
                attempt += 1


def _retry_scraping(policy: RetryPolicy, exc: BaseException) -> bool:
    if isinstance(exc, SessionNotFoundError):
        return False
    if isinstance(exc, BrowserError):
        # Permanent client errors won't change on retry
        return exc.status_code not in policy.no_retry_status
    return isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError))


TRANSIENT_DB_MARKERS = ("connection", "deadlock", "timeout", "timed out", "lock wait", "gone away", "database is locked")


def _retry_database(policy: RetryPolicy, exc: BaseException) -> bool:
    if not isinstance(exc, sqlalchemy.exc.DBAPIError):
        return False
    if exc.connection_invalidated:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_DB_MARKERS)


SCRAPING_RETRY = RetryPolicy(
    name="scraping",
    max_retries=4,
    base_delay=2.0,
    max_delay=30.0,
    jitter=0.25,
    attempt_timeout=60.0,
    no_retry_status=frozenset({401, 403, 404}),
    retry_on=_retry_scraping,
)

DATABASE_RETRY = RetryPolicy(
    name="database",
    max_retries=3,
    base_delay=0.5,
    max_delay=5.0,
    retry_on=_retry_database,
)
