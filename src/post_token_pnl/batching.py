"""Bounded fan-out over a list of items."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_in_batches(
    items: Sequence[T],
    func: Callable[[T], Awaitable[R]],
    *,
    batch_size: int,
    delay_seconds: float = 0.0,
) -> list[tuple[T, R | BaseException]]:
    """Run ``func`` over ``items`` at most ``batch_size`` at a time.

    Results come back in input order, paired with their item. A failing item
    yields its exception instead of a result; other items are unaffected.
    ``delay_seconds`` is slept between consecutive batches.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")

    results: list[tuple[T, R | BaseException]] = []
    for start in range(0, len(items), batch_size):
        if start and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)
        batch = items[start : start + batch_size]
        outcomes = await asyncio.gather(*(func(item) for item in batch), return_exceptions=True)
        results.extend(zip(batch, outcomes, strict=True))
    return results
