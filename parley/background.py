"""
Detached background tasks.

``spawn_background`` runs a coroutine without the caller awaiting it.  The
task never blocks the caller, is never retried, and logs its failure.  A
strong reference is kept until it completes so it is not garbage-collected
mid-flight.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)

_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task %s failed: %s", task.get_name(), exc, exc_info=exc
        )


def spawn_background(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(coro, name=name)
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending_background_tasks() -> set[asyncio.Task]:
    return set(_tasks)


async def drain_background(timeout: float | None = None) -> None:
    """Wait for outstanding background tasks, e.g. on shutdown or in tests."""
    tasks = pending_background_tasks()
    if tasks:
        await asyncio.wait(tasks, timeout=timeout)
