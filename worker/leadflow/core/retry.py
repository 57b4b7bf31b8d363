"""Bounded exponential backoff for unreliable external calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry an operation up to ``max_retries`` total attempts.

    The wait after the n-th failed attempt (0-based) is ``base_delay * 2**n``.
    The last error is re-raised once attempts are exhausted.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    def call(self, fn: Callable[[], T], *, description: Optional[str] = None) -> T:
        label = description or getattr(fn, "__name__", "operation")
        final_attempt = self.max_retries - 1

        for attempt in range(self.max_retries):
            try:
                return fn()
            except self.retry_on as exc:
                logger.warning(
                    "%s failed (attempt %s/%s): %s", label, attempt + 1, self.max_retries, exc
                )
                if attempt == final_attempt:
                    logger.error("%s exhausted %s attempts", label, self.max_retries)
                    raise
                self.sleep(self.delay_for(attempt))

        raise RuntimeError(f"{label} made no attempts")


def with_retry(
    fn: Callable[[], T],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    description: Optional[str] = None,
) -> T:
    """Run ``fn`` under a one-off :class:`RetryPolicy`."""
    policy = RetryPolicy(max_retries=max_retries, base_delay=base_delay, sleep=sleep)
    return policy.call(fn, description=description)
