"""Tenacity retry helpers driven by the retry and relocation configs."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from .config import RelocateConfig, RetryConfig

T = TypeVar("T")

logger = structlog.get_logger()


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Usage::

        @with_retry(config.retry, retryable_exceptions=(httpx.TransportError,))
        async def fetch() -> str: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        reraise=True,
    )


def _give_up(state: RetryCallState) -> None:
    logger.info("lookup_gave_up", attempts=state.attempt_number)
    return None


async def poll_until(
    config: RelocateConfig,
    fn: Callable[[], Awaitable[T]],
    accept: Callable[[T], bool],
) -> T | None:
    """Call *fn* at a fixed interval until *accept* holds for its result.

    *fn* may be a coroutine function or any callable returning an
    awaitable.  Exceptions raised by *fn* count as a failed attempt.
    Returns ``None`` once ``config.attempts`` attempts are exhausted; never
    raises.
    """

    async def _attempt() -> T:
        return await fn()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.attempts),
        wait=wait_fixed(config.interval_seconds),
        retry=retry_if_exception_type(Exception) | retry_if_result(lambda r: not accept(r)),
        retry_error_callback=_give_up,
    )
    return await retrying(_attempt)
