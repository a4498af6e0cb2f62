from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator
from contextlib import suppress
from typing import TypeVar

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def backoff_delays(attempts: int, *, base: float, cap: float) -> Iterator[float]:
    """
    Capped exponential delays: min(cap, base * 2**attempt) for attempt in [0, attempts).
    No jitter: the schedule must be reproducible in tests.
    """
    for attempt in range(max(0, int(attempts))):
        yield max(0.0, min(float(cap), float(base) * (2**attempt)))


async def poll_with_backoff(
    probe: Callable[[], T | None],
    *,
    attempts: int,
    base: float,
    cap: float,
    sleep: SleepFn = asyncio.sleep,
    on_miss: Callable[[int, float], None] | None = None,
) -> tuple[T | None, int]:
    """
    Call probe() until it returns a non-empty value or the waits run out.

    The first check happens immediately, then once after each of `attempts`
    backoff delays (so at most attempts + 1 checks and `attempts` sleeps).
    Returns (value_or_None, number_of_checks_made).
    """
    checks = 1
    value = probe()
    if value:
        return value, checks
    for attempt, delay in enumerate(backoff_delays(attempts, base=base, cap=cap), start=1):
        if on_miss is not None:
            with suppress(Exception):
                on_miss(attempt, delay)
        await sleep(delay)
        checks += 1
        value = probe()
        if value:
            return value, checks
    return None, checks
