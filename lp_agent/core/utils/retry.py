from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from loguru import logger

from lp_agent.core.constants.base import (
    DEFAULT_READ_BASE_DELAY_S,
    DEFAULT_READ_MAX_DELAY_S,
    DEFAULT_READ_MAX_RETRIES,
)
from lp_agent.core.utils.web3 import is_rate_limited_error

T = TypeVar("T")


def exponential_backoff_s(
    attempt: int, *, base_delay_s: float = 0.25, max_delay_s: float | None = None
) -> float:
    delay_s = base_delay_s * (2**attempt)
    if max_delay_s is not None:
        delay_s = min(delay_s, max_delay_s)
    return delay_s


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_s: float = 0.25,
    max_delay_s: float | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    get_delay_s: Callable[[int, Exception], float] | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> T:
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")

    for attempt in range(max_retries):
        try:
            return await fn()
        except Exception as exc:  # noqa: BLE001
            if attempt >= max_retries - 1:
                raise
            if should_retry is not None and not should_retry(exc):
                raise

            delay_s = (
                get_delay_s(attempt, exc)
                if get_delay_s is not None
                else exponential_backoff_s(
                    attempt, base_delay_s=base_delay_s, max_delay_s=max_delay_s
                )
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay_s)
            await asyncio.sleep(delay_s)

    raise RuntimeError("retry_async exhausted retries")


def _log_retry(attempt: int, exc: Exception, delay_s: float) -> None:
    logger.warning(
        f"RPC rate-limited (attempt {attempt + 1}); retrying in {delay_s:.2f}s: {exc}"
    )


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry policy for reads that only retries on gateway rate limiting."""

    max_retries: int = DEFAULT_READ_MAX_RETRIES
    base_delay_s: float = DEFAULT_READ_BASE_DELAY_S
    max_delay_s: float | None = DEFAULT_READ_MAX_DELAY_S

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(
            fn,
            max_retries=self.max_retries,
            base_delay_s=self.base_delay_s,
            max_delay_s=self.max_delay_s,
            should_retry=is_rate_limited_error,
            on_retry=_log_retry,
        )


NO_RETRY = BackoffPolicy(max_retries=1)


class ReadThrottle:
    """Keeps consecutive display reads at least ``min_interval_s`` apart."""

    def __init__(
        self,
        min_interval_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if min_interval_s < 0:
            raise ValueError("min_interval_s must be non-negative")
        self.min_interval_s = float(min_interval_s)
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None

    async def wait(self) -> None:
        now = self._clock()
        if self._last is not None:
            remaining = self.min_interval_s - (now - self._last)
            if remaining > 0:
                await self._sleep(remaining)
                now = self._clock()
        self._last = now
