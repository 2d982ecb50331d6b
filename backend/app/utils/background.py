"""Fire-and-forget task helper."""

import asyncio
import logging
from typing import Coroutine, Optional, Set

logger = logging.getLogger(__name__)


def spawn_background(
    coro: Coroutine,
    name: str,
    registry: Optional[Set[asyncio.Task]] = None
) -> asyncio.Task:
    """
    Run a coroutine detached from the caller.

    The task's exception is observed and logged, its result discarded.
    When a registry set is given the task is held there until it finishes
    so it is not garbage collected mid-flight.
    """
    task = asyncio.create_task(coro, name=name)
    if registry is not None:
        registry.add(task)

    def _observe(finished: asyncio.Task) -> None:
        if registry is not None:
            registry.discard(finished)
        if finished.cancelled():
            return
        error = finished.exception()
        if error is not None:
            logger.warning(f"Background task {name} failed: {error}")

    task.add_done_callback(_observe)
    return task
