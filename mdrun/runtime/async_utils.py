"""
async_utils.py - Async-to-sync bridging and bounded waiting.

run_async_safely lets synchronous callers (the CLI, sync tests) drive the
coroutine API. wait_for_condition is the primitive sequential flows use to
suspend until a completion callback has fired.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_async_safely(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine safely, handling event loop context.

    This function provides a clean sync-to-async bridge that:
    - Creates a new event loop if none exists
    - Properly handles cleanup
    - Handles being called from an async context gracefully

    Note: This should only be called from synchronous code. If called
    from within an async context, a warning is logged and the coroutine
    is run in a separate thread pool executor.

    Args:
        coro: The coroutine to run.

    Returns:
        The result of the coroutine.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop - create one and run
        return asyncio.run(coro)

    logger.warning("run_async_safely called from async context. Consider using await directly.")
    import concurrent.futures

    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(asyncio.run, coro)
        return future.result()


async def wait_for_condition(
    predicate: Callable[[], bool],
    timeout_s: float,
    interval_s: float = 0.05,
) -> bool:
    """Poll predicate on the running loop until it is true or timeout_s passes.

    Returns:
        True if the predicate became true, False on timeout.
    """
    deadline = time.monotonic() + timeout_s
    while not predicate():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval_s, remaining))
    return True
