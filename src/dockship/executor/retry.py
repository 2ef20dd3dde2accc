"""Bounded retry with exponential backoff for remote steps."""

from __future__ import annotations

import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..errors import RemoteCommandError, RemoteConnectionError
from ..utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE: Tuple[Type[Exception], ...] = (RemoteConnectionError, RemoteCommandError)


class RetryPolicy:
    """Retries transient remote failures a fixed number of times."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 2.0,
        multiplier: float = 2.0,
        wait: Optional[Callable[[float], None]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.wait = wait or time.sleep

    def delay_for(self, attempt: int) -> float:
        """Delay after the `attempt`-th failure (1-based)."""
        return self.initial_delay * (self.multiplier ** (attempt - 1))

    def call(
        self,
        fn: Callable[[], T],
        *,
        step: str,
        on_retry: Optional[Callable[[int, Exception], None]] = None,
    ) -> T:
        attempt = 1
        while True:
            try:
                return fn()
            except RETRYABLE as exc:
                if attempt >= self.max_attempts:
                    logger.error("%s failed after %d attempt(s): %s", step, attempt, exc)
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    step,
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                if on_retry:
                    on_retry(attempt, exc)
                self.wait(delay)
                attempt += 1
