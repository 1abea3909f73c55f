"""Retry with exponential backoff for transient oracle failures."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import structlog

logger = structlog.get_logger()


@dataclass
class RetryPolicy:
    """How many times to retry, how long to wait, and on which errors."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_max: float = 0.5
    retryable_exceptions: Tuple[Type[BaseException], ...] = (
        ConnectionError,
        TimeoutError,
        asyncio.TimeoutError,
    )
    on_retry: Optional[Callable[[BaseException, int], None]] = None

    def next_delay(self, delay: float) -> float:
        delay = min(delay * self.backoff_multiplier, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter_max)
        return delay


class RetryError(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, message: str, last_exception: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    policy: RetryPolicy,
    *args: Any,
    **kwargs: Any,
) -> Any:
    """Await ``func(*args, **kwargs)``, retrying per ``policy``.

    Non-retryable exceptions propagate immediately.

    Raises:
        RetryError: If all attempts fail
    """
    name = getattr(func, "__name__", repr(func))
    delay = policy.initial_delay
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            result = await func(*args, **kwargs)
        except policy.retryable_exceptions as e:
            if attempt == attempts:
                logger.error(
                    "retry_exhausted",
                    function=name,
                    attempts=attempts,
                    error=str(e),
                )
                raise RetryError(
                    f"{name} failed after {attempts} attempts",
                    last_exception=e,
                ) from e

            logger.warning(
                "retry_attempt",
                function=name,
                attempt=attempt,
                delay=round(delay, 3),
                error=str(e),
            )
            if policy.on_retry:
                policy.on_retry(e, attempt)

            await asyncio.sleep(delay)
            delay = policy.next_delay(delay)
        else:
            if attempt > 1:
                logger.info("retry_succeeded", function=name, attempt=attempt)
            return result

    raise RetryError(f"{name} did not run")

