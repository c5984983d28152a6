"""Wait-with-backoff polling shared by every readiness check."""

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Linear backoff with a ceiling.

    The interval starts at ``initial``, grows by ``step`` after every failed
    attempt and never exceeds ``cap``. ``attempts`` bounds the number of
    predicate evaluations.
    """

    initial: float
    step: float = 0.0
    cap: float | None = None
    attempts: int = 30

    def intervals(self) -> Iterator[float]:
        """Yield the sleep before each retry (``attempts`` values)."""
        interval = self.initial
        for _ in range(self.attempts):
            yield interval if self.cap is None else min(interval, self.cap)
            interval += self.step

    @classmethod
    def constant(cls, interval: float, attempts: int) -> "BackoffPolicy":
        return cls(initial=interval, step=0.0, cap=interval, attempts=attempts)


def wait_until(
    predicate: Callable[[], bool],
    policy: BackoffPolicy,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, int, float], None] | None = None,
) -> bool:
    """
    Poll ``predicate`` until it returns True or the policy is exhausted.

    Args:
        predicate: Readiness check, called once per attempt
        policy: Backoff policy
        sleep: Sleep function (injectable for tests)
        on_retry: Called as (attempt, max_attempts, wait) before sleeping

    Returns:
        True if the predicate succeeded, False if all attempts failed
    """
    for attempt, interval in enumerate(policy.intervals(), start=1):
        if predicate():
            return True
        if on_retry:
            on_retry(attempt, policy.attempts, interval)
        else:
            logger.debug("Attempt %d/%d - waiting %ss", attempt, policy.attempts, interval)
        if attempt < policy.attempts:
            sleep(interval)
    return False
