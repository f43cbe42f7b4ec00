"""Retry budgets, backoff and the clock used for every suspension."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from core.errors import ConfigurationError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Clock:
    """Time source for sleeps and deadlines."""

    def monotonic(self) -> float:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock backed by the running event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff shape for one category of remote call.

    A multiplier of 1 gives a fixed interval.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("Retry delays must not be negative")
        if self.multiplier < 1:
            raise ConfigurationError("multiplier must be at least 1")

    def delay(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt (1-based)."""
        return min(self.max_delay, self.initial_delay * self.multiplier ** (attempt - 1))

    @classmethod
    def from_dict(cls, data: dict) -> "RetryPolicy":
        return cls(
            max_attempts=int(data.get("max_attempts", cls.max_attempts)),
            initial_delay=float(data.get("initial_delay", cls.initial_delay)),
            max_delay=float(data.get("max_delay", cls.max_delay)),
            multiplier=float(data.get("multiplier", cls.multiplier)),
        )


async def retry_call(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    clock: Clock,
    retry_on: Tuple[Type[BaseException], ...],
    description: str = "remote call",
) -> T:
    """Await fn() until it succeeds or the policy's budget runs out.

    Only exceptions in retry_on are retried; anything else propagates
    unchanged on the attempt that raised it.

    Raises:
        RetryExhaustedError: If every attempt raised a retryable error
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.error(f"{description} failed after {attempt} attempt(s): {e}")
                raise RetryExhaustedError(description, attempt, e) from e

            delay = policy.delay(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt}/{policy.max_attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            await clock.sleep(delay)
