"""
Detached background tasks.

The event loop only keeps weak references to running tasks, so a task whose
handle is dropped may be garbage collected before it finishes. ``spawn_detached``
keeps a strong reference until the task completes and reports its failure in
the log, since nobody awaits it.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

from modelloader.config.logging_config import get_logger

log = get_logger(__name__)

T = TypeVar("T")

_detached_tasks: set[asyncio.Task[Any]] = set()


def _on_detached_done(task: asyncio.Task[Any]) -> None:
    _detached_tasks.discard(task)
    if task.cancelled():
        log.debug(f"Detached task {task.get_name()} was cancelled")
        return
    exc = task.exception()
    if exc is not None:
        log.warning(f"Detached task {task.get_name()} failed: {exc}")


def spawn_detached(coro: Coroutine[Any, Any, T], name: str | None = None) -> asyncio.Task[T]:
    """
    Schedule a coroutine on the running loop without awaiting it.

    Args:
        coro: The coroutine to run.
        name: Optional task name, used in log messages.

    Returns:
        The created task. Callers may await it but are not required to.

    Raises:
        RuntimeError: If no event loop is running.
    """
    task = asyncio.get_running_loop().create_task(coro, name=name)
    _detached_tasks.add(task)
    task.add_done_callback(_on_detached_done)
    return task


def pending_detached_tasks() -> int:
    """Return the number of detached tasks that have not finished yet."""
    return len(_detached_tasks)
