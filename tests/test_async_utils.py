"""
Tests for async_utils module.

Covers run_sync_limited, gather_limited, and init_semaphore.
"""

import asyncio
import threading
import time

import pytest

import contentsync.core.async_utils as mod
from contentsync.core.async_utils import (
    gather_limited,
    init_semaphore,
    run_sync_limited,
)


def _sync_add(a: int, b: int) -> int:
    return a + b


@pytest.fixture
def restore_semaphore():
    original = mod._semaphore
    yield
    mod._semaphore = original


async def test_run_sync_limited_calls_function(restore_semaphore):
    """run_sync_limited runs the function in a worker thread."""
    init_semaphore(2)
    result = await run_sync_limited(_sync_add, 3, 4)
    assert result == 7


async def test_run_sync_limited_passes_kwargs(restore_semaphore):
    def _kw_func(*, node: int) -> str:
        return f"node {node}"

    init_semaphore(2)
    assert await run_sync_limited(_kw_func, node=2) == "node 2"


async def test_run_sync_limited_uses_worker_thread(restore_semaphore):
    init_semaphore(2)
    main = threading.get_ident()
    worker = await run_sync_limited(threading.get_ident)
    assert worker != main


async def test_init_semaphore_sets_value(restore_semaphore):
    init_semaphore(3)
    assert mod._semaphore is not None
    assert mod._semaphore._value == 3


async def test_run_sync_limited_respects_semaphore(restore_semaphore):
    """No more than max_parallel calls run at the same time."""
    init_semaphore(2)
    active = 0
    peak = 0
    guard = threading.Lock()

    def work():
        nonlocal active, peak
        with guard:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with guard:
            active -= 1
        return True

    results = await gather_limited([run_sync_limited(work) for _ in range(6)])
    assert results == [True] * 6
    assert peak <= 2


async def test_run_sync_limited_without_semaphore(restore_semaphore):
    mod._semaphore = None
    assert await run_sync_limited(_sync_add, 10, 20) == 30


async def test_gather_limited_preserves_order():
    async def delayed(value, delay):
        await asyncio.sleep(delay)
        return value

    results = await gather_limited([delayed("a", 0.03), delayed("b", 0.0), delayed("c", 0.01)])
    assert results == ["a", "b", "c"]


async def test_gather_limited_propagates_exception():
    def boom():
        raise ValueError("destination failed")

    with pytest.raises(ValueError, match="destination failed"):
        await gather_limited([run_sync_limited(boom)])
