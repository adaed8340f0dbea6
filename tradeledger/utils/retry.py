"""Re-running a unit of work after an optimistic version conflict.

Posting takes no row locks. Two writers that touch the same account race on
its ``version`` column and the loser gets ``StaleDataError`` at flush time.
Its transaction has already rolled back, so the whole unit of work is run
again from a fresh session.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFLICT_EXCEPTIONS: tuple = (StaleDataError,)


@dataclass
class RetryConfig:
    """How often and how patiently a conflicting unit of work is re-run."""
    max_attempts: int = 3
    base_delay: float = 0.05  # seconds
    max_delay: float = 2.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple = field(default_factory=lambda: CONFLICT_EXCEPTIONS)
    on_retry: Optional[Callable[[Exception, int], None]] = None

    @classmethod
    def from_settings(cls, settings: Optional[dict]) -> "RetryConfig":
        """Build from the ``posting`` section of validated settings."""
        posting = (settings or {}).get("posting", {})
        return cls(
            max_attempts=posting.get("max_attempts", cls.max_attempts),
            base_delay=posting.get("base_delay", cls.base_delay),
        )

    def delay_for(self, attempt: int) -> float:
        return calculate_delay(
            attempt, self.base_delay, self.max_delay, self.exponential_base, self.jitter
        )


def calculate_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float,
    jitter: bool,
) -> float:
    """Exponential backoff capped at ``max_delay``, jittered to 50-150%."""
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter:
        delay *= 0.5 + random.random()
    return delay


def run_with_retry(func: Callable[..., T], config: RetryConfig, *args: Any, **kwargs: Any) -> T:
    """
    Call ``func`` until it returns or fails with a non-conflict error.

    The last conflict is re-raised once ``config.max_attempts`` calls have
    all lost their version check.
    """
    name = getattr(func, "__name__", repr(func))
    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            attempt += 1
            if attempt >= config.max_attempts:
                logger.error(f"Giving up on {name} after {attempt} conflicting attempts: {e}")
                raise

            delay = config.delay_for(attempt - 1)
            logger.warning(
                f"Version conflict in {name} (attempt {attempt}/{config.max_attempts}): {e}. "
                f"Re-running in {delay:.2f}s"
            )
            if config.on_retry:
                config.on_retry(e, attempt)
            time.sleep(delay)
