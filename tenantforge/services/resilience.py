from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import Awaitable, Callable

from tenantforge.core.config import get_settings


logger = logging.getLogger(__name__)


Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize identity retry behavior so it can be tuned and tested without the orchestrator.
    max_attempts: int
    backoff_ms: int
    race_backoff_ms: int = 50
    max_backoff_ms: int = 5000
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt`` (1-based)."""
        base = self.backoff_ms * (2 ** (max(attempt, 1) - 1))
        capped = min(base, self.max_backoff_ms)
        if self.jitter:
            capped *= random.uniform(0.5, 1.5)
        return capped / 1000.0

    def race_delay(self) -> float:
        return self.race_backoff_ms / 1000.0


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=max(settings.identity_max_attempts, 1),
        backoff_ms=settings.identity_backoff_ms,
        race_backoff_ms=settings.identity_race_backoff_ms,
        max_backoff_ms=settings.identity_max_backoff_ms,
    )


async def default_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)
