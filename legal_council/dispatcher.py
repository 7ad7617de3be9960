"""ABOUTME: Bounded concurrent dispatch of council member calls.
ABOUTME: Runs at most N tasks at once and keeps results in task order."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_bounded(
    tasks: list[Callable[[], Awaitable[T]]],
    limit: int,
) -> list[Optional[T]]:
    """Run zero-argument async callables with at most ``limit`` in flight.

    A task that raises leaves ``None`` in its slot; the other tasks keep running.
    """
    if limit < 1:
        raise ValueError(f"Concurrency limit must be at least 1, got {limit}")
    if not tasks:
        return []

    results: list[Optional[T]] = [None] * len(tasks)
    cursor = 0

    async def _worker() -> None:
        nonlocal cursor
        while cursor < len(tasks):
            # Claimed before the await so no two workers take the same index.
            index = cursor
            cursor += 1
            try:
                results[index] = await tasks[index]()
            except Exception:
                logger.exception("Dispatched task %d failed", index)
                results[index] = None

    await asyncio.gather(*(_worker() for _ in range(min(limit, len(tasks)))))
    return results
