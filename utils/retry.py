"""Retry with exponential backoff. No global state."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from core.exceptions import TransientModelError

logger = logging.getLogger(__name__)
T = TypeVar("T")


def with_retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    delay_sec: float = 2.0,
    backoff: bool = True,
    retry_exceptions: tuple[type[Exception], ...] = (TransientModelError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute fn; on retry_exceptions retry with exponential backoff.
    A provider retry hint (retry_after_sec on the exception) raises the wait, never lowers it.
    Raises last exception after max_attempts.
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(attempts):
        try:
            return fn()
        except retry_exceptions as e:
            if attempt >= attempts - 1:
                raise
            wait = delay_sec * (2**attempt) if backoff else delay_sec
            hint = getattr(e, "retry_after_sec", None)
            if hint is not None:
                wait = max(wait, float(hint))
            logger.warning(
                "Retry attempt %s/%s after %.2fs (%s): %s",
                attempt + 1,
                attempts,
                wait,
                type(e).__name__,
                e,
            )
            sleep(wait)
    raise RuntimeError("retry exhausted")
