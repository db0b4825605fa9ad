"""
Retry and deadline policies.

Both are plain objects handed to the engines so tests can swap in a
no-sleep policy or a frozen clock.
"""
import time
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional
import logging

from .errors import DeadlineExceeded

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Bounded retry with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.05,
        max_delay: float = 1.0,
        exponential_base: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        return min(delay, self.max_delay)

    def attempts(self) -> Iterator[int]:
        """Yield attempt numbers, sleeping between them.

        The caller breaks out of the loop on success.
        """
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                self.sleep(self.delay_for(attempt - 1))
            yield attempt


class Deadline:
    """Caller-supplied time limit checked at stage boundaries."""

    def __init__(self, expires_at: Optional[datetime] = None, clock: Callable[[], datetime] = datetime.utcnow):
        self.expires_at = expires_at
        self.clock = clock

    @classmethod
    def after(cls, seconds: float, clock: Callable[[], datetime] = datetime.utcnow) -> "Deadline":
        return cls(clock() + timedelta(seconds=seconds), clock)

    @classmethod
    def none(cls) -> "Deadline":
        return cls(None)

    def expired(self) -> bool:
        return self.expires_at is not None and self.clock() >= self.expires_at

    def check(self, stage: str):
        if self.expired():
            logger.warning(f"Deadline exceeded at stage '{stage}'")
            raise DeadlineExceeded(stage)
