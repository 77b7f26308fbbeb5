"""Bounded exponential backoff used by saga steps and compensations."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    base: float = 0.1
    factor: float = 2.0
    cap: float = 30.0
    max_attempts: int = 6

    def delays(self) -> Iterator[float]:
        """Delays slept between attempts (one fewer than max_attempts)."""
        delay = self.base
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.cap)
            delay *= self.factor


class DeadlineExceeded(Exception):
    """The step budget ran out before an attempt succeeded."""

    def __init__(self, last_error: Optional[BaseException]):
        super().__init__(f"deadline exceeded: {last_error}")
        self.last_error = last_error


def call_with_retry(
    fn: Callable[[], T],
    *,
    backoff: Backoff,
    is_retryable: Callable[[BaseException], bool],
    description: str = "operation",
    deadline: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call ``fn`` until it succeeds, a non-retryable error is raised, attempts run
    out, or the monotonic ``deadline`` passes.

    The last error is re-raised on exhaustion; ``DeadlineExceeded`` wraps it when
    the deadline is what stopped the loop.
    """
    delays = backoff.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            if not is_retryable(e):
                raise
            wait_time = next(delays, None)
            if wait_time is None:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            if deadline is not None and clock() + wait_time >= deadline:
                logger.error(f"{description} hit its deadline after {attempt} attempts: {e}")
                raise DeadlineExceeded(e) from e
            logger.warning(
                f"{description} failed (attempt {attempt}/{backoff.max_attempts}): {e}. "
                f"Retrying in {wait_time:.2f}s..."
            )
            sleep(wait_time)
