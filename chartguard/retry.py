"""
Bounded retry with exponential backoff and jitter.

Used by the command executor for transient record-store failures.  Every
retry loop is bounded by ``max_attempts`` and every delay is capped by
``max_delay``, so no call can block indefinitely.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Configurable retry policy.

    Example:
        policy = RetryPolicy(max_attempts=3, base_delay=0.2)
        resource_id = policy.call(store.create, resource)
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.2,
        max_delay: float = 5.0,
        backoff_factor: float = 2.0,
        jitter: bool = True,
        exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter
        self.exceptions = exceptions
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        delay = min(delay, self.max_delay)
        if self.jitter:
            # full jitter: spread synchronized retries
            delay = random.uniform(0, delay)
        return delay

    def call(
        self,
        func: Callable[..., Any],
        *args: Any,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        **kwargs: Any,
    ) -> Any:
        """Call ``func`` until it succeeds or attempts run out.

        Exceptions outside ``self.exceptions`` propagate immediately.  When
        the last attempt fails its exception is re-raised.
        """
        attempt = 0
        while True:
            try:
                result = func(*args, **kwargs)
            except self.exceptions as exc:
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.error(
                        "Max retries (%d) exceeded for %s: %s",
                        self.max_attempts, getattr(func, "__name__", func), exc,
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Retry %d/%d for %s after %.2fs delay: %s",
                    attempt, self.max_attempts, getattr(func, "__name__", func), delay, exc,
                )
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                self._sleep(delay)
                continue
            if attempt > 0:
                logger.info(
                    "%s succeeded after %d retries", getattr(func, "__name__", func), attempt
                )
            return result

    def __call__(self, func: Callable[..., Any]) -> Callable[..., Any]:
        """Use the policy as a decorator."""
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return self.call(func, *args, **kwargs)
        return wrapper

