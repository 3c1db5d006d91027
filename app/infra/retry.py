# app/infra/retry.py
import logging
import random
import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


def backoff_delay(base: float, factor: float, attempt: int, cap: float, jitter: float = 0.25) -> float:
    """Exponentiële backoff (attempt telt vanaf 0), begrensd op cap, plus jitter."""
    delay = min(base * (factor ** attempt), cap)
    return delay + random.uniform(0, delay * jitter)


def retry_on(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    base: float = 0.2,
    factor: float = 2.0,
    cap: float = 2.0,
    is_retryable: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` up to ``attempts`` times.

    Non-retryable exceptions propagate immediately; after the last attempt the
    last exception is re-raised unchanged so callers can classify it.
    Never call this while holding an asyncio lock; it blocks.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            if is_retryable is not None and not is_retryable(e):
                raise
            if attempt + 1 >= attempts:
                raise
            delay = backoff_delay(base, factor, attempt, cap)
            attempt += 1
            if on_retry:
                on_retry(attempt, e, delay)
            else:
                logger.warning("retry #%s in %.2fs due to %r", attempt, delay, e)
            sleep(delay)
