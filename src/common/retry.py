"""Bounded retries with capped exponential backoff."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from constants import Constants
from common.logging_utils import extra_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: Optional[float] = None, cap: Optional[float] = None) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2**(attempt-1), capped."""
    base = Constants.HTTP_RETRY_BASE_DELAY_SEC if base is None else base
    cap = Constants.HTTP_RETRY_MAX_DELAY_SEC if cap is None else cap
    return min(cap, base * (2 ** max(0, attempt - 1)))


def retry_call(
    fn: Callable[[], T],
    *,
    retry_on: Tuple[Type[BaseException], ...],
    attempts: Optional[int] = None,
    context: str = "",
    sleep: Callable[[float], None] = time.sleep,
    should_continue: Callable[[], bool] = lambda: True,
) -> T:
    """Call ``fn`` until it succeeds or the attempt budget is spent.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised.
    ``should_continue`` lets a caller stop retrying once work is cancelled.
    """
    budget = attempts if attempts is not None else Constants.HTTP_RETRY_MAX
    budget = max(1, budget)
    for attempt in range(1, budget + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= budget or not should_continue():
                raise
            delay = backoff_delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                context or "operation",
                attempt,
                budget,
                exc,
                delay,
                extra=extra_context(event="retry", attempt=attempt, context=context),
            )
            sleep(delay)
    raise AssertionError("unreachable")
