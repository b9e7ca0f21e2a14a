from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from src.sandbox_backends.errors import BackendError, ProvisionError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_http_status(status: int | None) -> bool:
    if status is None:
        return False
    return status == 429 or 500 <= int(status) <= 599


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, TransportError):
        return True
    if isinstance(exc, BackendError):
        return is_retryable_http_status(exc.status_code)
    if isinstance(exc, ProvisionError):
        cause = exc.__cause__
        return cause is None or is_retryable_error(cause)
    return False


def backoff_delay_s(
    attempt: int, *, delay_s: float, backoff: float, max_delay_s: float | None
) -> float:
    d = delay_s * (backoff ** max(0, attempt - 1))
    if max_delay_s is not None:
        d = min(d, max_delay_s)
    return d


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 2,
    delay_s: float = 0.5,
    backoff: float = 2.0,
    max_delay_s: float | None = None,
    is_retryable: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Call `fn` up to ``retries + 1`` times with exponential backoff.

    Only ``Exception`` subclasses are retried; cancellation propagates.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            if attempt > retries or (is_retryable is not None and not is_retryable(exc)):
                raise
            wait = backoff_delay_s(
                attempt, delay_s=delay_s, backoff=backoff, max_delay_s=max_delay_s
            )
            logger.info("Attempt %d failed (%s); retrying in %.2fs", attempt, exc, wait)
            if on_retry is not None:
                on_retry(attempt, exc, wait)
            await asyncio.sleep(wait)
