"""Fire-and-forget background work"""
import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def _log_task_outcome(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.warning(f"Best-effort task {task.get_name()} was cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            f"Best-effort task {task.get_name()} failed: {type(exc).__name__}: {exc}",
            exc_info=exc
        )


def spawn_best_effort(coro: Awaitable[object], name: Optional[str] = None) -> None:
    """Schedule ``coro`` on the running loop; its errors are logged, never raised.

    Returns nothing on purpose: callers cannot observe (or be failed by) the
    outcome of the scheduled work.
    """
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _background_tasks.add(task)
    task.add_done_callback(_log_task_outcome)


async def drain_background_tasks() -> None:
    """Wait for every scheduled best-effort task (shutdown, tests)"""
    while _background_tasks:
        tasks = list(_background_tasks)
        await asyncio.gather(*tasks, return_exceptions=True)
        _background_tasks.difference_update(tasks)
