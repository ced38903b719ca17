"""Detached background tasks with their own failure logging."""

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


def spawn(
    coro: Coroutine[Any, Any, Any],
    description: str,
    tracked: Optional[Set["asyncio.Task[Any]"]] = None,
) -> "asyncio.Task[Any]":
    """
    Run a coroutine as a fire-and-forget task.

    Failures are logged with the given description and never re-raised.
    Must be called while an event loop is running.

    Args:
        coro: Coroutine to run
        description: What the task does, used in the failure log line
        tracked: Optional set the task is added to until it finishes

    Returns:
        The created task
    """
    task = asyncio.get_running_loop().create_task(coro)
    if tracked is not None:
        tracked.add(task)

    def _on_done(done: "asyncio.Task[Any]") -> None:
        if tracked is not None:
            tracked.discard(done)
        if done.cancelled():
            logger.debug(f"Background task cancelled: {description}")
            return
        exc = done.exception()
        if exc is not None:
            logger.error(f"Background task failed: {description}", exc_info=exc)

    task.add_done_callback(_on_done)
    return task


async def drain(tracked: Set["asyncio.Task[Any]"]) -> None:
    """Wait until every tracked task (including ones spawned meanwhile) is done."""
    while tracked:
        await asyncio.gather(*list(tracked), return_exceptions=True)
        # Let done-callbacks run so finished tasks leave the set.
        await asyncio.sleep(0)
