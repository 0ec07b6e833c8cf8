"""Polling, pacing, retry and cancellation primitives shared by the sync layers."""

from __future__ import annotations

import asyncio
import logging
import math
import random
import threading
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from stocksync.config import RetryPolicy
from stocksync.errors import RetryableError, RunCancelled
from stocksync.playwright_env import apply_wait_policy

T = TypeVar("T")

Sleeper = Callable[[int], Awaitable[None]]


async def sleep_ms(ms: int) -> None:
    if ms > 0:
        await asyncio.sleep(ms / 1000)


class CancelToken:
    """Cooperative cancellation flag checked between pages, records and poll ticks.

    ``check`` is an optional callable consulted on every check (for example a
    database lookup of an operator cancel request); a truthy result trips the
    token. The flag itself is a ``threading.Event`` so the dashboard thread can
    trip it safely.
    """

    def __init__(self, check: Callable[[], bool] | None = None) -> None:
        self._event = threading.Event()
        self._check = check
        self.reason: str | None = None

    def cancel(self, reason: str = "Run cancelled by operator.") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._check is not None and self._check():
            self.cancel()
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled(self.reason)


async def poll_until(
    predicate: Callable[[], Awaitable[T]],
    *,
    timeout_ms: int,
    interval_ms: int,
    sleep: Sleeper = sleep_ms,
    on_tick: Callable[[int, int], Awaitable[None]] | None = None,
    cancel: CancelToken | None = None,
) -> T | None:
    """Evaluate *predicate* until it returns a truthy value or the budget runs out.

    The budget is expressed as a number of ticks (``ceil(timeout / interval)``)
    rather than wall-clock time, so an injected ``sleep`` fully controls pacing.
    ``on_tick(tick, elapsed_ms)`` runs after every unsuccessful evaluation.
    Returns the truthy value, or None on timeout.
    """

    interval_ms = max(interval_ms, 1)
    ticks = max(1, math.ceil(max(timeout_ms, 0) / interval_ms))
    for tick in range(ticks + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        result = await predicate()
        if result:
            return result
        if tick == ticks:
            break
        if on_tick is not None:
            await on_tick(tick + 1, (tick + 1) * interval_ms)
        await sleep(interval_ms)
    return None


async def jitter_wait(
    min_ms: int = 350,
    max_ms: int = 900,
    *,
    obey_policy: bool = True,
    sleep: Sleeper = sleep_ms,
) -> None:
    """Sleep for a random interval between the provided bounds."""

    if min_ms < 0:
        min_ms = 0
    if max_ms < min_ms:
        max_ms = min_ms

    if obey_policy:
        min_ms, max_ms = apply_wait_policy(min_ms, max_ms)

    await sleep(int(random.uniform(min_ms, max_ms)))


def retrying(
    policy: RetryPolicy,
    *,
    logger: logging.Logger,
    retry_on: tuple[type[BaseException], ...] = (RetryableError,),
) -> AsyncRetrying:
    """Build a tenacity AsyncRetrying from a configured retry policy.

    Usage::

        async for attempt in retrying(policy, logger=LOGGER):
            with attempt:
                await fetch()
    """

    delay_s = policy.delay_ms / 1000
    if policy.backoff:
        wait = wait_exponential(multiplier=delay_s, min=delay_s, max=policy.max_delay_ms / 1000)
    else:
        wait = wait_fixed(delay_s)
    return AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait,
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
