from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from birthday_messenger.models import RetryPolicy

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def delay_for_attempt(delays: Sequence[float], attempt: int) -> float:
    """Delay after the ``attempt``-th failure (1-based), clamped to the last configured delay."""
    if not delays:
        return 0.0
    return float(delays[min(attempt - 1, len(delays) - 1)])


class RetryExecutor:
    """Runs an async operation up to ``max_attempts`` times.

    Waits between attempts go through ``sleep`` (``asyncio.sleep`` by default),
    so a waiting recipient only suspends its own task. The executor knows
    nothing about which errors are terminal; after the last attempt it
    re-raises whatever the operation raised.
    """

    def __init__(self, *, sleep: Sleep = asyncio.sleep, name: str = "operation") -> None:
        self._sleep = sleep
        self._name = name

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int,
        delays: Sequence[float],
    ) -> T:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                LOGGER.error(
                    "%s attempt %s/%s failed: %s",
                    self._name,
                    attempt,
                    max_attempts,
                    exc,
                    extra={
                        "details": {
                            "operation": self._name,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "error": str(exc),
                        }
                    },
                )
                if attempt >= max_attempts:
                    raise
                delay = delay_for_attempt(delays, attempt)
                LOGGER.info("Retrying %s in %.1fs", self._name, delay)
                await self._sleep(delay)
                attempt += 1

    async def run_with_policy(self, operation: Callable[[], Awaitable[T]], policy: RetryPolicy) -> T:
        return await self.run(operation, policy.max_attempts, policy.delays_seconds)
