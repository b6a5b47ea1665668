"""Background task manager for long-running installs."""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from queue import Empty, Queue
from typing import Any, Callable, Iterator

from .errors import ModManagerError, OperationCancelled

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class TaskInfo:
    id: str
    operation: str
    status: TaskStatus = TaskStatus.PENDING
    message: str = ""
    result: Any = None
    error: str = ""
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    events: Queue = field(default_factory=Queue)

    @property
    def finished(self) -> bool:
        return self.status in FINISHED


class TaskManager:
    """Runs operations on daemon threads and tracks their status."""

    def __init__(self):
        self._tasks: dict[str, TaskInfo] = {}
        self._lock = threading.Lock()

    def create(self, operation: str) -> str:
        """Create a new task. Returns task_id."""
        task_id = str(uuid.uuid4())[:8]
        task = TaskInfo(id=task_id, operation=operation)
        with self._lock:
            self._tasks[task_id] = task
        return task_id

    def run_in_background(self, task_id: str, fn: Callable[..., Any], *args, **kwargs) -> None:
        """
        Run fn in a daemon thread, updating task status.

        fn receives the task's cancel event as the keyword argument
        cancel_event.
        """
        task = self.get(task_id)
        if not task:
            return

        def _run():
            task.status = TaskStatus.RUNNING
            task.events.put({"event": "status", "data": TaskStatus.RUNNING.value})
            try:
                result = fn(*args, cancel_event=task.cancel_event, **kwargs)
            except OperationCancelled as e:
                self._finish(task, TaskStatus.CANCELLED, error=str(e))
            except ModManagerError as e:
                logger.warning("Task %s (%s) failed: %s", task.id, task.operation, e)
                self._finish(task, TaskStatus.FAILED, error=str(e))
            except Exception as e:
                logger.exception("Task %s (%s) crashed", task.id, task.operation)
                self._finish(task, TaskStatus.FAILED, error=str(e))
            else:
                status = TaskStatus.CANCELLED if task.cancel_event.is_set() else TaskStatus.COMPLETED
                self._finish(task, status, result=result)

        thread = threading.Thread(target=_run, name=f"modman-task-{task_id}", daemon=True)
        thread.start()

    def update_progress(self, task_id: str, msg: str, **data: Any) -> None:
        """Push a progress update."""
        task = self.get(task_id)
        if not task:
            return
        task.message = msg
        task.events.put({"event": "progress", "data": {"msg": msg, **data}})

    def _finish(self, task: TaskInfo, status: TaskStatus, result: Any = None, error: str = "") -> None:
        task.result = result
        task.error = error
        task.status = status
        if status == TaskStatus.COMPLETED:
            task.events.put({"event": "complete", "data": result})
        else:
            task.events.put({"event": status.value, "data": error})
        task.done.set()

    def cancel(self, task_id: str) -> bool:
        """Request cancellation. Returns False if the task is unknown or finished."""
        task = self.get(task_id)
        if not task or task.finished:
            return False
        task.cancel_event.set()
        return True

    def wait(self, task_id: str, timeout: float | None = None) -> TaskInfo | None:
        """Block until the task finishes (or timeout). Returns the task."""
        task = self.get(task_id)
        if task:
            task.done.wait(timeout)
        return task

    def get(self, task_id: str) -> TaskInfo | None:
        with self._lock:
            return self._tasks.get(task_id)

    def all(self) -> list[TaskInfo]:
        with self._lock:
            return list(self._tasks.values())

    def iter_events(self, task_id: str, poll: float = 1.0) -> Iterator[dict[str, Any]]:
        """Yield queued task events until the task finishes."""
        task = self.get(task_id)
        if not task:
            return

        while True:
            try:
                event = task.events.get(timeout=poll)
            except Empty:
                if task.finished and task.events.empty():
                    return
                continue
            yield event
            if event["event"] in ("complete", "failed", "cancelled"):
                return
