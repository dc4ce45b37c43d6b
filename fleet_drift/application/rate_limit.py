"""Shared API budget: a token bucket plus a bounded exponential backoff policy."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from fleet_drift.domain.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenBucket:
    """Thread-safe token bucket shared by every worker of a run."""

    def __init__(
        self,
        rate_per_second: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate_per_second <= 0 or capacity <= 0:
            raise ValueError("rate_per_second and capacity must be positive")
        self.rate = rate_per_second
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self):
        now = self._clock()
        elapsed = max(now - self._updated, 0.0)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    def acquire(self):
        """Block until one token is available, then take it."""
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) / self.rate
            self._sleep(wait)

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens


@dataclass
class RetryState:
    """Explicit retry state: which attempt we are on and how long to wait next."""

    max_attempts: int
    base_delay: float
    max_delay: float
    attempt: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_delay(self, retry_after: Optional[float] = None) -> float:
        if retry_after is not None and retry_after >= 0:
            return min(retry_after, self.max_delay)
        return min(self.base_delay * (2 ** (self.attempt - 1)), self.max_delay)

    def advance(self):
        self.attempt += 1


class RetryPolicy:
    """Bounded exponential backoff on RateLimitExceeded."""

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def new_state(self) -> RetryState:
        return RetryState(self.max_attempts, self.base_delay, self.max_delay)

    def call(self, operation: Callable[[], T], description: str = "request") -> T:
        """
        Run operation, retrying on rate-limit signals until attempts are exhausted.

        Args:
            operation: Zero-argument callable performing one external call
            description: Used in log messages

        Returns:
            The operation's result

        Raises:
            RateLimitExceeded: If every attempt was rate limited
        """
        state = self.new_state()
        while True:
            state.advance()
            try:
                return operation()
            except RateLimitExceeded as e:
                if state.exhausted:
                    logger.warning(f"{description}: rate limited, giving up after {state.attempt} attempts")
                    raise
                delay = state.next_delay(e.retry_after)
                logger.warning(
                    f"{description}: rate limited (attempt {state.attempt}/{state.max_attempts}). "
                    f"Retrying in {delay:.1f}s..."
                )
                self._sleep(delay)


class ApiBudget:
    """Every external call acquires a token, then runs under the retry policy."""

    def __init__(self, bucket: TokenBucket, retry_policy: RetryPolicy):
        self.bucket = bucket
        self.retry_policy = retry_policy

    def call(self, operation: Callable[[], T], description: str = "request") -> T:
        def gated() -> T:
            self.bucket.acquire()
            return operation()

        return self.retry_policy.call(gated, description)
