"""
Bounded retry with exponential backoff for transient provider failures.

Used around embedding and OCR calls, where ingestion correctness depends on
completing every chunk of a document.
"""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from src.errors import CancellationToken, Cancelled, check_cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    max_retries: int = 3,
    backoff: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    description: str = "call",
    cancel_token: Optional[CancellationToken] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func`` until it succeeds or ``max_retries`` retries are exhausted.

    The delay starts at ``backoff`` seconds and doubles after each failure.
    The last exception is re-raised unchanged. ``Cancelled`` and anything in
    ``give_up_on`` are raised on the first occurrence.
    """
    delay = backoff
    attempt = 0
    while True:
        check_cancelled(cancel_token)
        try:
            return func()
        except Cancelled:
            raise
        except give_up_on:
            raise
        except retry_on as e:
            attempt += 1
            if attempt > max_retries:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            logger.warning(
                f"{description} failed (attempt {attempt}/{max_retries + 1}): {e}. "
                f"Retrying in {delay:.1f}s"
            )
            sleep(delay)
            delay *= 2
