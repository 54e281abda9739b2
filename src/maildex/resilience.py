"""
Retry with exponential backoff, guarded by a circuit breaker.

The breaker is a small state machine:

    CLOSED --(N consecutive failures)--> OPEN
    OPEN --(cooldown elapsed)--> HALF_OPEN
    HALF_OPEN --(success)--> CLOSED
    HALF_OPEN --(failure)--> OPEN

While OPEN, calls fail fast with CircuitOpenError without running the
operation. The clock and sleep functions are injectable so tests can drive
transitions deterministically.
"""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, TypeVar

from .errors import CircuitOpenError, RemoteError, RetryError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops calling a failing server until a cooldown has passed."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            failure_threshold: Consecutive failures that open the circuit
            cooldown: Seconds to stay open before allowing a trial call
            clock: Monotonic time source
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> BreakerState:
        if self._state is BreakerState.OPEN and self._clock() - self._opened_at >= self.cooldown:
            self._transition(BreakerState.HALF_OPEN)
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def before_call(self) -> None:
        """Raise CircuitOpenError if calls are currently blocked."""
        if self.state is BreakerState.OPEN:
            remaining = self.cooldown - (self._clock() - self._opened_at)
            raise CircuitOpenError(max(remaining, 0.0))

    def record_success(self) -> None:
        self._failures = 0
        if self._state is not BreakerState.CLOSED:
            self._transition(BreakerState.CLOSED)

    def record_failure(self) -> None:
        self._failures += 1
        if self.state is BreakerState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._opened_at = self._clock()
            if self._state is not BreakerState.OPEN:
                self._transition(BreakerState.OPEN)

    def call(self, func: Callable[[], T], failures: tuple = (RemoteError,)) -> T:
        """Run func through the breaker."""
        self.before_call()
        try:
            result = func()
        except failures:
            self.record_failure()
            raise
        self.record_success()
        return result

    def _transition(self, new_state: BreakerState) -> None:
        logger.info("Circuit %s -> %s", self._state.value, new_state.value)
        self._state = new_state


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 4
    initial_delay: float = 2.0
    max_delay: float = 300.0
    exponential_base: float = 2.0
    jitter: bool = False
    retryable_exceptions: tuple = (RemoteError,)


def exponential_backoff(
    attempt: int,
    initial_delay: float = 2.0,
    exponential_base: float = 2.0,
    max_delay: float = 300.0,
    jitter: bool = False,
) -> float:
    """
    Calculate exponential backoff delay.

    Args:
        attempt: Current attempt number (0-indexed)
        initial_delay: Initial delay in seconds
        exponential_base: Base for exponential calculation
        max_delay: Maximum delay in seconds
        jitter: Whether to add random jitter (0-25% of delay)

    Returns:
        Delay in seconds
    """
    delay = min(initial_delay * (exponential_base**attempt), max_delay)
    if jitter:
        delay += random.uniform(0, delay * 0.25)
    return delay


def call_with_retry(
    func: Callable[[], T],
    config: RetryConfig | None = None,
    breaker: CircuitBreaker | None = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """Run func, retrying retryable failures with exponential backoff.

    Every attempt goes through the breaker when one is given. An open
    circuit raises CircuitOpenError immediately, and exceptions outside
    `retryable_exceptions` propagate on the first occurrence.

    Raises:
        RetryError: all attempts failed
        CircuitOpenError: the breaker refused the call
    """
    config = config or RetryConfig()
    last_error: Exception | None = None

    for attempt in range(config.max_attempts):
        if breaker:
            breaker.before_call()
        try:
            result = func()
        except config.retryable_exceptions as e:
            last_error = e
            if breaker:
                breaker.record_failure()
            if attempt < config.max_attempts - 1:
                delay = exponential_backoff(
                    attempt,
                    initial_delay=config.initial_delay,
                    exponential_base=config.exponential_base,
                    max_delay=config.max_delay,
                    jitter=config.jitter,
                )
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    description, attempt + 1, config.max_attempts, e, delay,
                )
                sleep(delay)
            continue

        if breaker:
            breaker.record_success()
        return result

    raise RetryError(
        f"{description} failed after {config.max_attempts} attempts: {last_error}",
        config.max_attempts,
        last_error,
    )
