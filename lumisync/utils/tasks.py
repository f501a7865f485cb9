"""
Helpers for running groups of coroutines.
"""

import asyncio
import logging
from typing import Awaitable, Iterable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


async def gather_or_cancel(aws: Iterable[Awaitable[T]]) -> list[T]:
    """
    Runs all awaitables concurrently and returns their results in order.

    The first exception (or a cancellation of the caller) cancels every task
    that is still running; the exception is re-raised once they have all
    finished unwinding, so no task outlives the call.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return []
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        pending = [t for t in tasks if not t.done()]
        if pending:
            log.debug(f"Cancelling {len(pending)} in-flight task(s)")
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
