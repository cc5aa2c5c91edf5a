"""Retry policies shared by the ingest writer and the batch processor."""

import logging
import time
from typing import Callable, Type, Tuple

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

logger = logging.getLogger(__name__)


def immediate_retrying(
    attempts: int,
    retry_on: Tuple[Type[BaseException], ...],
) -> Retrying:
    """A small bounded number of immediate attempts, re-raising the last error."""
    return Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_none(),
        retry=retry_if_exception_type(retry_on),
        reraise=True,
    )


def exponential_retrying(
    attempts: int,
    retry_on: Tuple[Type[BaseException], ...],
    sleep: Callable[[float], None] = time.sleep,
    max_delay: float = 8,
) -> Retrying:
    """
    Exponential backoff: waits 1s, 2s, 4s, 8s between up to five attempts.

    The last error is re-raised once the attempts are spent.
    """
    return Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=1, max=max_delay),
        retry=retry_if_exception_type(retry_on),
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
