# celine/pubsub/core/tasks.py
"""
Supervised background tasks.

Every background coroutine the manager launches runs through the
supervisor, which keeps a handle, a status and an error slot per task and
reports failures to an optional callback instead of discarding them.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ErrorCallback = Callable[[str, BaseException], None]


@dataclass
class SupervisedTask:
    """
    Handle for a supervised task.

    Attributes:
        name: Unique task name (e.g. ``publish-loop``, ``consume:orders``).
        task: The underlying asyncio task.
        status: Current status.
        error: Exception that ended the task, if it failed.
        started_at: When the task was spawned.
        finished_at: When the task ended.
    """

    name: str
    task: asyncio.Task[Any]
    status: TaskStatus = TaskStatus.RUNNING
    error: BaseException | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def done(self) -> bool:
        return self.task.done()

    async def join(self) -> None:
        """Wait for the task to end without raising its outcome."""
        await asyncio.gather(self.task, return_exceptions=True)


class TaskSupervisor:
    """
    Spawns and tracks named background tasks.

    Example:
        supervisor = TaskSupervisor(on_error=lambda name, exc: alert(name, exc))
        supervisor.spawn("publish-loop", loop.run())
        ...
        await supervisor.cancel_all()
    """

    def __init__(self, on_error: ErrorCallback | None = None) -> None:
        self._tasks: dict[str, SupervisedTask] = {}
        self._on_error = on_error

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> SupervisedTask:
        """
        Launch ``coro`` as a supervised task.

        Raises:
            ValueError: If a task with the same name is still running.
        """
        current = self._tasks.get(name)
        if current is not None and not current.done:
            coro.close()
            raise ValueError(f"Task '{name}' is already running")

        task = asyncio.create_task(coro, name=name)
        handle = SupervisedTask(name=name, task=task)
        self._tasks[name] = handle
        task.add_done_callback(lambda t: self._on_done(handle, t))

        logger.debug("Spawned task: %s", name)
        return handle

    def _on_done(self, handle: SupervisedTask, task: asyncio.Task[Any]) -> None:
        handle.finished_at = datetime.now(timezone.utc)

        if task.cancelled():
            handle.status = TaskStatus.CANCELLED
            logger.debug("Task cancelled: %s", handle.name)
            return

        exc = task.exception()
        if exc is None:
            handle.status = TaskStatus.COMPLETED
            logger.debug("Task completed: %s", handle.name)
            return

        handle.status = TaskStatus.FAILED
        handle.error = exc
        logger.error(
            "Task '%s' failed: %s",
            handle.name,
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )

        if self._on_error is not None:
            try:
                self._on_error(handle.name, exc)
            except Exception:
                logger.exception("Task error callback failed for '%s'", handle.name)

    def get(self, name: str) -> SupervisedTask | None:
        return self._tasks.get(name)

    def list(self) -> list[SupervisedTask]:
        return list(self._tasks.values())

    async def cancel(self, name: str) -> bool:
        """
        Cancel a running task and wait for it to end.

        Returns:
            True if a running task was cancelled, False otherwise.
        """
        handle = self._tasks.get(name)
        if handle is None or handle.done:
            return False

        handle.task.cancel()
        await handle.join()
        return True

    async def cancel_all(self) -> None:
        running = [h for h in self._tasks.values() if not h.done]
        for handle in running:
            handle.task.cancel()
        if running:
            await asyncio.gather(*(h.task for h in running), return_exceptions=True)
            logger.info("Cancelled %d task(s)", len(running))

    def __len__(self) -> int:
        return len(self._tasks)
