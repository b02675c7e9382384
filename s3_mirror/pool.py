from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

LOG = logging.getLogger("s3_mirror.pool")

T = TypeVar("T")


async def run_bounded(
    limit: int, tasks: Sequence[Callable[[], Awaitable[T]]]
) -> list[T]:
    """Run ``tasks`` with at most ``limit`` of them in flight.

    Tasks are started eagerly; whenever one settles the next is admitted.
    Results come back in submission order. After the first failure no new
    tasks are started, the ones already running are left to finish, and the
    first error is raised once they have. Cancelling the caller cancels the
    running tasks as well.
    """
    if limit < 1:
        msg = "limit must be at least 1"
        raise ValueError(msg)

    results: dict[int, T] = {}
    pending: dict[asyncio.Future[Any], int] = {}
    first_error: BaseException | None = None
    next_index = 0

    def admit() -> None:
        nonlocal next_index
        while first_error is None and next_index < len(tasks) and len(pending) < limit:
            future = asyncio.ensure_future(tasks[next_index]())
            pending[future] = next_index
            next_index += 1

    admit()
    try:
        while pending:
            done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                index = pending.pop(future)
                exc = future.exception()
                if exc is None:
                    results[index] = future.result()
                elif first_error is None:
                    first_error = exc
                else:
                    LOG.debug("task %d also failed: %s", index, exc)
            admit()
    finally:
        # Only non-empty when the caller itself was cancelled.
        for future in pending:
            future.cancel()

    if first_error is not None:
        raise first_error
    return [results[index] for index in range(len(tasks))]
