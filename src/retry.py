"""Bounded fixed-interval retry for polling slowly-converging cluster state.

Only read-only operations go through here. Mutating apply/delete calls are
never retried.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from errors import DeadlineExceeded, RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _always(_exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget, fixed inter-attempt delay and retryable-error predicate."""
    max_attempts: int = 3
    delay: float = 5.0
    retryable: Callable[[BaseException], bool] = field(default=_always, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay < 0:
            raise ValueError(f"delay must be >= 0, got {self.delay}")

    @classmethod
    def for_timeout(cls, timeout: float, interval: float,
                    retryable: Callable[[BaseException], bool] = _always) -> 'RetryPolicy':
        """Policy that polls every `interval` seconds for roughly `timeout` seconds."""
        if interval <= 0:
            return cls(max_attempts=1, delay=0, retryable=retryable)
        attempts = max(1, math.ceil(timeout / interval))
        return cls(max_attempts=attempts, delay=interval, retryable=retryable)


class Deadline:
    """Absolute expiry point on the monotonic clock."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.expires_at


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    deadline: Optional[Deadline] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call operation until it returns, the budget runs out or the deadline hits.

    Raises:
        RetryExhausted: all attempts failed (chained from the last error)
        DeadlineExceeded: deadline passed, or would pass during the next delay
        Any exception the policy does not consider retryable, unchanged
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.max_attempts + 1):
        if deadline is not None and deadline.expired():
            raise DeadlineExceeded(f"Deadline exceeded before attempt {attempt}",
                                   output=getattr(last_error, 'output', ''))
        try:
            return operation()
        except Exception as e:  # pylint: disable=broad-except
            if not policy.retryable(e):
                raise
            last_error = e
            logger.debug(f"Attempt {attempt}/{policy.max_attempts} failed: {e}")

        if attempt == policy.max_attempts:
            break
        if deadline is not None and deadline.remaining() < policy.delay:
            raise DeadlineExceeded(
                f"Deadline exceeded after {attempt} attempts "
                f"({deadline.remaining():.1f}s left, next poll in {policy.delay}s)",
                output=getattr(last_error, 'output', ''),
            ) from last_error
        sleep(policy.delay)

    raise RetryExhausted(policy.max_attempts, last_error) from last_error
