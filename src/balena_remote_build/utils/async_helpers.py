from __future__ import annotations

import asyncio
import concurrent.futures
from typing import Any, Coroutine, TypeVar

T = TypeVar("T")


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine synchronously.

    Creates a new event loop if none is running. If a loop is already
    running in this thread, the coroutine runs on a fresh loop in a worker
    thread and this thread blocks until it is done.

    Args:
        coro: The coroutine to run.

    Returns:
        The value returned by *coro*.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(asyncio.run, coro)
        return future.result()
