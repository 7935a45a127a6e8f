"""
Bounded retry loop shared by every waiting phase of the upload.

The radio link drops bytes, so most phases are "send, then wait a short
while for a reply, and try again until a deadline". ``retry_until`` runs
that loop once, with a hard wall-clock bound, and reports how it ended.
"""

import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class RetryOutcome(Generic[T]):
    """
    How a bounded retry loop ended.

    Attributes:
        value: First non-None value returned by the attempt, or None on timeout
        attempts: Number of times the attempt ran
        elapsed: Seconds spent in the loop
    """
    value: Optional[T]
    attempts: int
    elapsed: float

    @property
    def ok(self) -> bool:
        return self.value is not None

    @property
    def timed_out(self) -> bool:
        return self.value is None


def retry_until(
    attempt: Callable[[], Optional[T]],
    timeout: float,
    clock: Callable[[], float] = time.monotonic,
) -> RetryOutcome[T]:
    """
    Run ``attempt`` until it returns something other than None.

    The attempt always runs at least once. It is not started again once
    ``timeout`` seconds have passed since the first call, so the loop
    ends within ``timeout`` plus the duration of one attempt.

    Args:
        attempt: Callable doing one bounded try; None means "nothing yet"
        timeout: Overall deadline in seconds
        clock: Monotonic time source (injectable for tests)
    """
    start = clock()
    attempts = 0
    while True:
        attempts += 1
        value = attempt()
        elapsed = clock() - start
        if value is not None:
            return RetryOutcome(value, attempts, elapsed)
        if elapsed >= timeout:
            return RetryOutcome(None, attempts, elapsed)
