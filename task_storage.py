"""
In-memory task registry for background continuation generation.

Each POST to the continuation endpoint creates a ``TaskInfo`` here in the
``processing`` state. The detached upstream call later moves it to
``completed`` or ``failed`` exactly once. The status endpoint reads it and,
on the first read of a terminal state, schedules its deletion after a fixed
delay. Entries that are never polled stay in memory for the life of the
process.

The registry is an ordinary object owned by the application (see
``create_app`` in ``main.py``) rather than module state, so tests and
alternative backends can supply their own instance.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from errors import ErrorKind

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskState(str, Enum):
    """Enumeration of possible task states."""

    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskState.processing


@dataclass
class TaskError:
    """Classified failure of a background task."""

    message: str
    kind: ErrorKind


@dataclass
class TaskInfo:
    """Represents the state of one continuation generation task."""

    id: str
    status: TaskState
    started_at: datetime
    params: Dict[str, Any]
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[TaskError] = None
    # Running upstream call; cancelling it is the only way to abort a task.
    handle: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)
    cleanup: Optional[asyncio.TimerHandle] = field(default=None, repr=False, compare=False)


class TaskStorage:
    """Process-local task registry.

    All methods are synchronous and must be called from the event loop
    thread; no locking is needed because nothing else mutates the mapping.
    """

    def __init__(self) -> None:
        self.memory_storage: Dict[str, TaskInfo] = {}

    def __len__(self) -> int:
        return len(self.memory_storage)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.memory_storage

    def create(self, task_id: str, params: Dict[str, Any]) -> TaskInfo:
        """Insert a new ``processing`` task, replacing any entry with the same id."""
        if task_id in self.memory_storage:
            logger.warning("[TaskStorage] Overwriting existing task %s", task_id)
            self.delete(task_id)
        task = TaskInfo(
            id=task_id,
            status=TaskState.processing,
            started_at=utcnow(),
            params=dict(params),
        )
        self.memory_storage[task_id] = task
        return task

    def get(self, task_id: str) -> Optional[TaskInfo]:
        """Retrieve task information."""
        return self.memory_storage.get(task_id)

    def attach(self, task_id: str, handle: asyncio.Task) -> None:
        """Record the running upstream call for a task.

        A handle cancelled before its coroutine ever ran still settles the
        task as failed through the done-callback.
        """
        task = self.memory_storage.get(task_id)
        if task is not None:
            task.handle = handle
            handle.add_done_callback(functools.partial(self._on_handle_done, task_id))

    def _on_handle_done(self, task_id: str, handle: asyncio.Task) -> None:
        task = self.memory_storage.get(task_id)
        if task is None or task.handle is not handle or task.status.is_terminal:
            return
        if handle.cancelled():
            self.fail(task_id, TaskError(message="Task cancelled", kind=ErrorKind.unknown))
            logger.info("[TaskStorage] Task %s cancelled before it started", task_id)

    def complete(self, task_id: str, result: Dict[str, Any]) -> Optional[TaskInfo]:
        """Move a processing task to ``completed`` with its segment."""
        task = self._settle(task_id, TaskState.completed)
        if task is not None:
            task.result = result
        return task

    def fail(self, task_id: str, error: TaskError) -> Optional[TaskInfo]:
        """Move a processing task to ``failed`` with a classified error."""
        task = self._settle(task_id, TaskState.failed)
        if task is not None:
            task.error = error
        return task

    def delete(self, task_id: str) -> None:
        """Delete task information."""
        task = self.memory_storage.pop(task_id, None)
        if task is not None and task.cleanup is not None:
            task.cleanup.cancel()

    def cancel(self, task_id: str) -> bool:
        """Cancel the upstream call of a processing task.

        Returns ``True`` when a cancellation was requested. The task itself
        records the failure once the cancellation is delivered.
        """
        task = self.memory_storage.get(task_id)
        if task is None or task.status.is_terminal:
            return False
        if task.handle is None or task.handle.done():
            return False
        return task.handle.cancel()

    def schedule_cleanup(self, task_id: str, delay: float) -> None:
        """Delete the task ``delay`` seconds from now.

        Only the first call for a task arms the timer; later calls leave the
        original deadline untouched.
        """
        task = self.memory_storage.get(task_id)
        if task is None or task.cleanup is not None:
            return
        loop = asyncio.get_running_loop()
        task.cleanup = loop.call_later(delay, self._expire, task_id, task)
        logger.debug("[TaskStorage] Task %s expires in %.1fs", task_id, delay)

    def _expire(self, task_id: str, task: TaskInfo) -> None:
        # Skip if the id was reused by a newer entry in the meantime.
        if self.memory_storage.get(task_id) is task:
            del self.memory_storage[task_id]
            logger.info("[TaskStorage] Task %s cleaned up", task_id)

    def _settle(self, task_id: str, state: TaskState) -> Optional[TaskInfo]:
        task = self.memory_storage.get(task_id)
        if task is None:
            logger.warning("[TaskStorage] Cannot mark unknown task %s as %s", task_id, state.value)
            return None
        if task.status.is_terminal:
            logger.warning(
                "[TaskStorage] Task %s already %s; ignoring %s",
                task_id,
                task.status.value,
                state.value,
            )
            return None
        task.status = state
        task.completed_at = utcnow()
        return task
