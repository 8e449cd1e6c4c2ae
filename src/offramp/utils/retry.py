"""Bounded retry with exponential backoff.

Network-calling components take a RetryPolicy instead of looping with
sleeps inline. The sleep function is injectable so tests run without real
delays.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from offramp.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry schedule: ``base_delay * multiplier ** (attempt - 1)`` seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: Optional[float] = None
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, **overrides) -> "RetryPolicy":
        settings = get_settings()
        params = {
            "max_attempts": settings.retry_max_attempts,
            "base_delay": settings.retry_base_delay,
        }
        params.update(overrides)
        return cls(**params)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    @property
    def schedule(self) -> list[float]:
        """All delays that a fully failing run would sleep."""
        return [self.delay_for(a) for a in range(1, self.max_attempts)]

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        description: str = "operation",
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """Run ``operation`` until it succeeds or attempts run out.

        Exceptions not listed in ``retry_on`` propagate immediately. After
        the last attempt the final exception is re-raised.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                await self.sleep(delay)

        # max_attempts >= 1 guarantees a return or raise above
        raise RuntimeError("unreachable")
