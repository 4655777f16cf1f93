"""
External call policy for the review pipeline

- call_external: per-attempt timeout + bounded exponential backoff,
  retrying TransientExternalError only
- bounded_gather: per-candidate fan-out under a concurrency ceiling
"""
import asyncio
import logging  # Needed for tenacity before_sleep_log level constants
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from src.core.exceptions import TransientExternalError
from src.services.review.config import ConcurrencyConfig, get_config


# Stdlib logger for tenacity before_sleep_log
_retry_logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def call_external(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    provider: str = "external",
    config: Optional[ConcurrencyConfig] = None,
    **kwargs: Any,
) -> T:
    """
    Call an external provider with timeout and retry.

    Timeouts surface as TransientExternalError so they are retried too.
    Any other exception propagates on the first attempt.

    Args:
        func: Coroutine function to call
        provider: Provider name for logs/errors
        config: Concurrency config (defaults to global)

    Returns:
        Whatever func returns
    """
    cfg = config or get_config().concurrency

    async def _attempt() -> T:
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=cfg.call_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransientExternalError(
                f"{provider} call timed out after {cfg.call_timeout_seconds}s",
                provider=provider,
            ) from e

    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(TransientExternalError),
        stop=stop_after_attempt(cfg.max_attempts),
        wait=wait_exponential(
            multiplier=cfg.initial_backoff_seconds,
            min=cfg.initial_backoff_seconds,
            max=cfg.max_backoff_seconds,
        ),
        before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
        reraise=True,
    ):
        with attempt:
            return await _attempt()


async def bounded_gather(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
) -> List[R | BaseException]:
    """
    Run worker over items with at most `limit` in flight.

    Results keep input order; per-item exceptions are returned in place
    of results instead of aborting the batch.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run_one(item: T) -> R:
        async with semaphore:
            return await worker(item)

    return await asyncio.gather(
        *[run_one(item) for item in items],
        return_exceptions=True,
    )
