from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def run_batched(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int = 10,
    delay_s: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[Tuple[T, R | BaseException]]:
    """Run `worker` over items, `batch_size` at a time, pausing between batches.

    Every item settles; failures come back as the exception in its slot.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    results: List[Tuple[T, R | BaseException]] = []
    for start in range(0, len(items), batch_size):
        batch = items[start : start + batch_size]
        outcomes = await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)
        results.extend(zip(batch, outcomes))
        failed = sum(1 for outcome in outcomes if isinstance(outcome, BaseException))
        logger.info("Batch done start=%d size=%d failed=%d", start, len(batch), failed)
        if start + batch_size < len(items) and delay_s > 0:
            await sleep(delay_s)
    return results
