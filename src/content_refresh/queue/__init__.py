"""SQLite-backed durable task queue and polling worker."""

from content_refresh.queue.models import TaskStatus, TaskView
from content_refresh.queue.repository import TaskQueueRepository
from content_refresh.queue.worker import TaskWorker, WorkerRunSummary

__all__ = [
    "TaskQueueRepository",
    "TaskStatus",
    "TaskView",
    "TaskWorker",
    "WorkerRunSummary",
]
