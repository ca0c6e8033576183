"""Bounded fan-out helper shared by the resolver, validator and orchestrator."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def bounded_gather(
    items: Sequence[T],
    func: Callable[[T], Awaitable[R]],
    limit: int,
) -> List[R]:
    """
    Run ``func`` over ``items`` with at most ``limit`` calls in flight.

    Results come back in input order. If any call raises, the calls still
    pending are cancelled before the exception propagates.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run_with_limit(item: T) -> R:
        async with semaphore:
            return await func(item)

    tasks = [asyncio.ensure_future(run_with_limit(item)) for item in items]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
