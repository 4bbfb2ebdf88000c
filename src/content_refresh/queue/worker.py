"""Polling worker that dispatches queued tasks to registered handlers."""

from __future__ import annotations

import logging
import random
import signal
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from content_refresh.queue.models import TaskView
from content_refresh.queue.repository import TaskQueueRepository
from content_refresh.storage.common import utc_now

logger = logging.getLogger(__name__)

TaskHandler = Callable[[dict[str, Any]], object]


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls


class TaskWorker:
    """Consumes queued tasks and runs the handler registered for each task name.

    Delivery is at-least-once: a handler that raises is retried with jittered
    exponential backoff until the task runs out of attempts.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskQueueRepository,
        worker_id: str,
        handlers: Mapping[str, TaskHandler] | None = None,
        poll_interval_seconds: float = 2.0,
        retry_base_seconds: int = 30,
        retry_max_seconds: int = 900,
        stale_task_seconds: int = 1800,
    ) -> None:
        self.repository = repository
        self.worker_id = worker_id
        self.handlers: dict[str, TaskHandler] = dict(handlers or {})
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_task_seconds = stale_task_seconds
        self._random = random.Random()  # noqa: S311
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def register(self, task_name: str, handler: TaskHandler) -> None:
        self.handlers[task_name] = handler

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        task = self._claim_task()
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        handler = self.handlers.get(task.task_name)
        if handler is None:
            logger.error(
                "No handler registered for task (task_id=%s name=%s).",
                task.task_id,
                task.task_name,
            )
            if self.repository.fail_task(
                task_id=task.task_id,
                error_summary=f"No handler registered for task name {task.task_name!r}.",
            ):
                summary.failed = 1
            return summary

        logger.debug(
            "Running task (task_id=%s name=%s attempt=%s/%s).",
            task.task_id,
            task.task_name,
            task.attempt,
            task.max_attempts,
        )
        try:
            handler(task.payload)
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Task handler failed (task_id=%s name=%s attempt=%s).",
                task.task_id,
                task.task_name,
                task.attempt,
            )
            self._handle_failure(task=task, error=error, summary=summary)
            return summary

        if self.repository.complete_task(task_id=task.task_id):
            summary.succeeded = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_tasks reached.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self, *, signal_name: str | None = None) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Worker stop requested (signal=%s).", signal_name or "manual")

    def _claim_task(self) -> TaskView | None:
        if self.stale_task_seconds > 0:
            self.repository.recover_stale_running_tasks(
                stale_after=timedelta(seconds=self.stale_task_seconds),
            )
        if self._stop_requested:
            return None
        return self.repository.claim_next_ready_task(worker_id=self.worker_id)

    def _handle_failure(
        self,
        *,
        task: TaskView,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        error_summary = f"{type(error).__name__}: {error}"[:1000]
        if task.attempt < task.max_attempts:
            delay_seconds = self._compute_retry_delay(retry_number=task.attempt)
            if self.repository.schedule_retry(
                task_id=task.task_id,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
                error_summary=error_summary,
            ):
                summary.retried = 1
            return
        if self.repository.fail_task(task_id=task.task_id, error_summary=error_summary):
            summary.failed = 1

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
