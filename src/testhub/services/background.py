"""Detached background writes.

Learn: lastSeenAt / lastUsedAt updates are fire-and-forget. They run as
their own asyncio tasks with their own DB session, so they never delay a
response and never fail one. A failure is logged and dropped; concurrent
touches may overwrite each other, which is accepted.

asyncio only keeps weak references to tasks, so we hold a strong one
until the task finishes.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

logger = structlog.get_logger()

_tasks: set[asyncio.Task] = set()


def spawn(coro: Coroutine[Any, Any, Any], *, event: str, **fields: Any) -> asyncio.Task:
    """Schedule `coro` detached from the caller. Failures are logged under `event`."""

    async def _guarded() -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(event, error=str(e), **fields)

    task = asyncio.create_task(_guarded())
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    return task


async def drain() -> None:
    """Wait for every outstanding background task (shutdown, tests)."""
    while _tasks:
        await asyncio.gather(*list(_tasks), return_exceptions=True)
