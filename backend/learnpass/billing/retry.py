"""
Bounded polling for provider objects that materialise asynchronously.

Every wait in the billing code goes through RetryPolicy: a fixed sleep
interval and a maximum number of attempts, failing explicitly when the
attempts run out.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from learnpass.config.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raised when the condition was not met within max_attempts."""

    def __init__(self, description: str, attempts: int, last_value: Optional[object] = None):
        super().__init__(f"{description}: condition not met after {attempts} attempts")
        self.description = description
        self.attempts = attempts
        self.last_value = last_value


@dataclass(frozen=True)
class RetryPolicy:
    interval_seconds: float = 1.0
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            interval_seconds=settings.poll_interval_seconds,
            max_attempts=settings.poll_max_attempts,
        )

    async def poll(
        self,
        fetch: Callable[[], Awaitable[T]],
        until: Callable[[T], bool],
        description: str = "provider poll",
    ) -> T:
        """
        Call fetch() until until(result) is true.

        Errors raised by fetch() propagate immediately; only an unmet
        condition is retried.
        """
        value: Optional[T] = None
        for attempt in range(1, self.max_attempts + 1):
            value = await fetch()
            if until(value):
                if attempt > 1:
                    logger.info("Poll condition met", extra={
                        "description": description,
                        "attempt": attempt,
                    })
                return value
            if attempt < self.max_attempts:
                logger.debug("Poll condition not met, waiting", extra={
                    "description": description,
                    "attempt": attempt,
                    "interval_seconds": self.interval_seconds,
                })
                await asyncio.sleep(self.interval_seconds)

        logger.warning("Poll attempts exhausted", extra={
            "description": description,
            "attempts": self.max_attempts,
        })
        raise RetryExhaustedError(description, self.max_attempts, last_value=value)
