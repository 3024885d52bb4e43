from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Strong references so detached tasks are not garbage-collected mid-flight.
_background_tasks: set[asyncio.Task[Any]] = set()


def _on_done(task: asyncio.Task[Any]) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.info("Detached task %s cancelled", task.get_name())
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Detached task %s failed", task.get_name(), exc_info=exc)


def spawn_detached(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    """
    Hand work off to a task that outlives the current request.

    The caller gets no result or error back: completion and failure are only
    visible in the logs. Must be called from a running event loop.
    """
    task = asyncio.get_running_loop().create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending_detached() -> int:
    return len(_background_tasks)


async def drain_detached(timeout: float | None = None) -> None:
    """Wait for in-flight detached tasks (tests and graceful shutdown)."""
    tasks = list(_background_tasks)
    if not tasks:
        return
    done, pending = await asyncio.wait(tasks, timeout=timeout)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
