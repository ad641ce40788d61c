"""
Workflow task queue

Named tasks run in submission order, in bounded batches. Tasks inside a batch
run concurrently; the next batch starts when the previous one has finished.
Transient failures are retried with backoff; a task that still fails is marked
failed with its error and the rest of the queue carries on.
"""
from __future__ import annotations

import copy
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from ..models import TaskStatus, TaskType, WorkflowTask
from ..utils import (
    OntologyEngineError,
    OntologyMetrics,
    RetryPolicy,
    get_logger,
    retry_call,
    utc_now,
)

logger = get_logger(__name__)

TaskFn = Callable[[WorkflowTask], Any]
ChangeListener = Callable[[List[WorkflowTask]], None]


class TaskQueue:
    """
    Usage:
        queue = TaskQueue(batch_size=20, cancel_event=event)
        queue.enqueue("scan orders.id", TaskType.SCAN_COLUMN, scan_fn, {"table": "orders"})
        failed = queue.run()
    """

    def __init__(
        self,
        batch_size: int = 20,
        retry_policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
        on_change: Optional[ChangeListener] = None,
    ):
        self.batch_size = max(1, batch_size)
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel_event = cancel_event
        self.on_change = on_change
        self._tasks: List[WorkflowTask] = []
        self._fns: Dict[str, TaskFn] = {}
        self._lock = threading.Lock()

    @property
    def tasks(self) -> List[WorkflowTask]:
        return list(self._tasks)

    def snapshot(self) -> List[WorkflowTask]:
        """Detached copies for persisting on the workflow record"""
        with self._lock:
            return copy.deepcopy(self._tasks)

    def enqueue(self, name: str, task_type: TaskType, fn: TaskFn,
                payload: Optional[Dict[str, Any]] = None) -> WorkflowTask:
        task = WorkflowTask(name=name, task_type=task_type, payload=payload or {})
        with self._lock:
            self._tasks.append(task)
            self._fns[task.id] = fn
        return task

    def pending(self) -> List[WorkflowTask]:
        return [t for t in self._tasks if t.status in (TaskStatus.QUEUED, TaskStatus.PAUSED)]

    def failed(self) -> List[WorkflowTask]:
        return [t for t in self._tasks if t.status == TaskStatus.FAILED]

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def run(self) -> List[WorkflowTask]:
        """
        Drain the queue; returns the tasks that failed.

        When cancellation is requested, tasks not yet started are marked paused.
        """
        queue = self.pending()
        for start in range(0, len(queue), self.batch_size):
            if self.cancelled:
                self._pause(queue[start:])
                break
            batch = queue[start:start + self.batch_size]
            with ThreadPoolExecutor(max_workers=len(batch)) as executor:
                list(executor.map(self._execute, batch))
            self._notify()
        return self.failed()

    def _execute(self, task: WorkflowTask) -> None:
        fn = self._fns[task.id]
        with self._lock:
            task.status = TaskStatus.PROCESSING
            task.started_at = utc_now()
            task.error = None

        def on_retry(attempt: int, error: BaseException) -> None:
            with self._lock:
                task.retry_count = attempt

        try:
            task.result = retry_call(
                lambda: fn(task),
                policy=self.retry_policy,
                on_retry=on_retry,
                cancel_event=self.cancel_event,
                operation=task.name,
            )
        except OntologyEngineError as e:
            with self._lock:
                task.status = TaskStatus.FAILED
                task.error = e.message
                task.completed_at = utc_now()
            logger.warning(
                f"Task {task.name} failed",
                extra={"extra_fields": {
                    "task_type": task.task_type.value,
                    "retry_count": task.retry_count,
                    "error": e.message,
                }}
            )
            OntologyMetrics.record_error(type(e).__name__, e.category.value)
            return

        with self._lock:
            task.status = TaskStatus.COMPLETE
            task.completed_at = utc_now()

    def _pause(self, tasks: List[WorkflowTask]) -> None:
        with self._lock:
            for task in tasks:
                task.status = TaskStatus.PAUSED
        logger.info("Task queue cancelled", extra={"extra_fields": {"paused": len(tasks)}})
        self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.snapshot())
