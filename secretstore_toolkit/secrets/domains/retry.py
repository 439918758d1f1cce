"""Retry policy applied to every backend call, built on tenacity."""
import logging
from typing import Any, Callable, TypeVar

import tenacity

from .errors import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRIES = 3


class RetryPolicy:
    """
    Retries backend calls up to a configured count.

    Idempotent calls (reads, listings) are retried on any failure the backend
    does not classify as permanent. Mutating calls (write, delete, rotate) are
    retried only on failures the backend classifies as transient, such as
    throttling or timeouts, so an ambiguous failure never creates a duplicate
    version.

    Args:
        max_retries: Retries after the first attempt (0 disables retrying)
        is_transient: Predicate for failures safe to retry on mutating calls
        is_permanent: Predicate for failures never worth retrying
        backoff: Multiplier in seconds for exponential backoff between attempts
        max_backoff: Upper bound in seconds for a single wait
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_RETRIES,
        is_transient: Callable[[BaseException], bool] = lambda exc: False,
        is_permanent: Callable[[BaseException], bool] = lambda exc: False,
        backoff: float = 0.5,
        max_backoff: float = 10.0,
    ):
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.max_retries = max_retries
        self._is_transient = is_transient
        self._is_permanent = is_permanent
        self._backoff = backoff
        self._max_backoff = max_backoff

    def _retrying(self, predicate: Callable[[BaseException], bool]) -> tenacity.Retrying:
        return tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self.max_retries + 1),
            wait=tenacity.wait_exponential(multiplier=self._backoff, max=self._max_backoff),
            retry=tenacity.retry_if_exception(predicate),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _retryable_read(self, exc: BaseException) -> bool:
        if isinstance(exc, StoreError) or not isinstance(exc, Exception):
            return False
        return not self._is_permanent(exc)

    def _retryable_write(self, exc: BaseException) -> bool:
        if isinstance(exc, StoreError) or not isinstance(exc, Exception):
            return False
        return self._is_transient(exc)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run an idempotent call with retries."""
        return self._retrying(self._retryable_read)(func, *args, **kwargs)

    def call_mutating(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a non-idempotent call, retrying only transient failures."""
        return self._retrying(self._retryable_write)(func, *args, **kwargs)
