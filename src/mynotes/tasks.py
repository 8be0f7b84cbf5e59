"""Background task manager for long-running bulk work (imports, backups).

Work runs on a small thread pool. Each submission gets a ``TaskHandle``
through which the work reports fractional progress; the presentation layer
polls ``current_tasks`` or the handles themselves.
"""

import logging
import threading
import uuid
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

from mynotes.config import config
from mynotes.models.schema import utc_now
from mynotes.observability import ErrorReporter

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskHandle:
    """A submitted unit of background work.

    Attributes:
        id: Task identifier
        name: Short task name
        description: Longer description for display
        category: Free-form grouping ("Import", "Backup", ...)
        created_at: Submission time (UTC)
    """

    def __init__(self, name: str, description: str = "", category: str = "General"):
        self.id = uuid.uuid4()
        self.name = name
        self.description = description
        self.category = category
        self.created_at: datetime = utc_now()
        self._state = TaskState.PENDING
        self._progress = 0.0
        self._error: Optional[str] = None
        self._cancel_requested = threading.Event()
        self._lock = threading.Lock()
        self._future: Optional[Future] = None

    @property
    def state(self) -> TaskState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    @property
    def error(self) -> Optional[str]:
        with self._lock:
            return self._error

    @property
    def is_finished(self) -> bool:
        return self.state in (TaskState.COMPLETED, TaskState.FAILED)

    @property
    def cancel_requested(self) -> bool:
        """Set by ``cancel_all``; long-running work should check it between batches."""
        return self._cancel_requested.is_set()

    def update_progress(self, progress: float) -> None:
        """Report progress in 0.0..1.0; values outside are clamped."""
        with self._lock:
            if self._state in (TaskState.COMPLETED, TaskState.FAILED):
                return
            self._state = TaskState.RUNNING
            self._progress = min(1.0, max(0.0, float(progress)))

    def _start(self) -> None:
        with self._lock:
            self._state = TaskState.RUNNING
            self._progress = 0.0

    def _complete(self) -> None:
        with self._lock:
            if self._state == TaskState.FAILED:
                return
            self._state = TaskState.COMPLETED
            self._progress = 1.0

    def _fail(self, message: str) -> None:
        with self._lock:
            self._state = TaskState.FAILED
            self._error = message

    def result(self, timeout: Optional[float] = None) -> Any:
        """Wait for the work and return its value (re-raising its exception)."""
        if self._future is None:
            raise RuntimeError(f"Task {self.name} was never scheduled")
        return self._future.result(timeout=timeout)

    def __repr__(self) -> str:
        return f"<TaskHandle(name='{self.name}', state={self.state.value}, progress={self.progress:.2f})>"


class BackgroundTaskManager:
    """Runs submitted work on a bounded thread pool.

    Args:
        max_workers: Concurrent tasks (defaults to ``config.background_workers``)
        reporter: Optional sink notified when a task fails
    """

    def __init__(self, max_workers: Optional[int] = None, reporter: Optional[ErrorReporter] = None):
        self.max_workers = max_workers or config.background_workers
        self.reporter = reporter
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="mynotes-task"
        )
        self._tasks: List[TaskHandle] = []
        self._lock = threading.Lock()

    def submit(
        self,
        name: str,
        work: Callable[[TaskHandle], Any],
        description: str = "",
        category: str = "General",
    ) -> TaskHandle:
        """Schedule ``work(handle)`` and return its handle immediately."""
        handle = TaskHandle(name, description=description, category=category)
        with self._lock:
            self._tasks.append(handle)
        handle._future = self._executor.submit(self._run, handle, work)
        logger.debug(f"Task submitted: {name} ({handle.id})")
        return handle

    def _run(self, handle: TaskHandle, work: Callable[[TaskHandle], Any]) -> Any:
        handle._start()
        try:
            result = work(handle)
        except Exception as e:
            handle._fail(str(e))
            logger.error(f"Task {handle.name} failed: {e}", exc_info=True)
            if self.reporter is not None:
                self.reporter.report(e, f"BackgroundTaskManager.submit({handle.name})")
            raise
        handle._complete()
        logger.debug(f"Task completed: {handle.name}")
        return result

    @property
    def tasks(self) -> List[TaskHandle]:
        with self._lock:
            return list(self._tasks)

    @property
    def current_tasks(self) -> List[TaskHandle]:
        """Tasks that are pending or running."""
        return [task for task in self.tasks if not task.is_finished]

    def get(self, task_id: uuid.UUID) -> Optional[TaskHandle]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def cancel_all(self) -> int:
        """Cancel pending tasks and flag running ones.

        Running work cannot be interrupted; it is marked failed and asked to
        stop through ``cancel_requested``.

        Returns:
            Number of tasks affected.
        """
        affected = 0
        for task in self.current_tasks:
            task._cancel_requested.set()
            if task._future is not None:
                task._future.cancel()
            task._fail("Cancelled by user")
            affected += 1
        if affected:
            logger.info(f"Cancelled {affected} background task(s)")
        return affected

    def clear_finished(self) -> int:
        """Forget completed and failed tasks; returns how many were removed."""
        with self._lock:
            before = len(self._tasks)
            self._tasks = [task for task in self._tasks if not task.is_finished]
            return before - len(self._tasks)

    def wait_all(self, timeout: Optional[float] = None) -> None:
        """Block until every known task has finished (errors are not raised)."""
        for task in self.tasks:
            if task._future is None:
                continue
            try:
                task._future.exception(timeout=timeout)
            except CancelledError:
                continue

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "BackgroundTaskManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown(wait=True)
