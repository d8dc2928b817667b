"""Async helpers for running blocking distribution work in parallel."""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Module-level semaphore, set by init_semaphore()
_semaphore: asyncio.Semaphore | None = None


def init_semaphore(max_parallel: int = 5) -> None:
    """Bound the number of concurrent destinations."""
    global _semaphore
    _semaphore = asyncio.Semaphore(max_parallel)
    logger.debug("Distribution semaphore initialized: max_parallel=%d", max_parallel)


async def run_sync_limited(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking function in a worker thread, bounded by the semaphore.

    Falls back to unbounded if the semaphore was never initialized.

    Example:
        init_semaphore(config.max_parallel_requests)
        await gather_limited(
            [run_sync_limited(deliver, batch) for batch in batches]
        )
    """
    if _semaphore is None:
        return await asyncio.to_thread(func, *args, **kwargs)
    async with _semaphore:
        return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(coros: Sequence[Coroutine[Any, Any, T]]) -> list[T]:
    """Run coroutines concurrently and return their results in order.

    Each coroutine should use ``run_sync_limited`` internally.  The first
    exception propagates.
    """
    return list(await asyncio.gather(*coros))
