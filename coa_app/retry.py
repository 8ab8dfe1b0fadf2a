from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from coa_app.config import Settings

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with linear backoff for a single remote call.

    ``delay_for(attempt)`` is the pause after the given failed attempt
    (1-based), so the default waits 1s then 2s across three attempts.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    sleep: SleepFunc = field(default=asyncio.sleep, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must not be negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.FETCH_MAX_ATTEMPTS,
            base_delay_seconds=settings.FETCH_RETRY_BASE_DELAY_SECONDS,
        )

    def delay_for(self, attempt: int) -> float:
        return attempt * self.base_delay_seconds
