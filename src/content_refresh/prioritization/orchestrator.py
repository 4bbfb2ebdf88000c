"""Job lifecycle for batched prioritization over the durable queue."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from content_refresh.collaborators import MetricsSource
from content_refresh.config import PrioritizationSettings
from content_refresh.errors import (
    BatchFatalError,
    JobAlreadyRunningError,
    MetricsSourceUnavailableError,
    NothingToDoError,
)
from content_refresh.models import (
    IDLE,
    BatchCounters,
    BatchOutcome,
    IdleSnapshot,
    JobError,
    JobStarted,
    JobStatus,
    JobView,
)
from content_refresh.prioritization.jobs import JobRepository
from content_refresh.prioritization.processor import ItemProcessor
from content_refresh.queue.repository import TaskQueueRepository
from content_refresh.queue.worker import TaskWorker
from content_refresh.repository import ContentRepository

logger = logging.getLogger(__name__)

PRIORITIZE_BATCH_TASK = "prioritize_batch"


@dataclass(slots=True)
class CancelResult:
    job_id: str | None
    cancelled_tasks: int


class BatchOrchestrator:
    """Start, advance, and finish prioritization jobs one batch per queued task.

    Batch N+1 is enqueued only after batch N has been folded into the job
    record, so at most one batch of a job is in flight. Every batch handler is
    safe to run more than once for the same `(job_id, batch_number)`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: ContentRepository,
        jobs: JobRepository,
        queue: TaskQueueRepository,
        processor: ItemProcessor,
        metrics_source: MetricsSource,
        settings: PrioritizationSettings | None = None,
        task_max_attempts: int = 3,
    ) -> None:
        self.repository = repository
        self.jobs = jobs
        self.queue = queue
        self.processor = processor
        self.metrics_source = metrics_source
        self.settings = settings or PrioritizationSettings()
        self.task_max_attempts = task_max_attempts

    def register(self, worker: TaskWorker) -> None:
        worker.register(PRIORITIZE_BATCH_TASK, self.handle_task)

    def start(self) -> JobStarted:
        """Create a job for all published items and enqueue its first batch."""

        self.sweep_stale()
        self.jobs.purge_expired()

        running = self.jobs.running()
        if running is not None:
            raise JobAlreadyRunningError(running.job_id)
        if not self.metrics_source.is_authenticated():
            raise MetricsSourceUnavailableError(
                "Metrics source is not authenticated. Connect it before prioritizing.",
            )
        total_items = self.repository.count_published_items()
        if total_items == 0:
            raise NothingToDoError("No published items to prioritize.")

        batch_size = self.settings.batch_size
        total_batches = math.ceil(total_items / batch_size)
        job = self.jobs.create(
            total_items=total_items,
            total_batches=total_batches,
            batch_size=batch_size,
        )
        try:
            self._enqueue_batch(job_id=job.job_id, batch_number=1, batch_size=batch_size)
        except Exception as error:
            self.jobs.transition(
                job.job_id,
                to_status=JobStatus.FAILED,
                error=JobError(batch=1, item_id=None, message=str(error), critical=True),
            )
            raise
        logger.info(
            "Started prioritization job %s (items=%s batches=%s).",
            job.job_id,
            total_items,
            total_batches,
        )
        return JobStarted(job_id=job.job_id, total_items=total_items, total_batches=total_batches)

    def handle_task(self, payload: dict[str, Any]) -> BatchOutcome:
        """Queue handler entry point for `prioritize_batch` tasks."""

        return self.handle_batch(
            job_id=str(payload["job_id"]),
            batch_number=int(payload["batch_number"]),
            offset=int(payload["offset"]),
            batch_size=int(payload["batch_size"]),
        )

    def handle_batch(
        self,
        *,
        job_id: str,
        batch_number: int,
        offset: int,
        batch_size: int,
    ) -> BatchOutcome:
        job = self.jobs.get(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            logger.info(
                "Skipping batch %s of job %s (status=%s).",
                batch_number,
                job_id,
                job.status.value if job is not None else "missing",
            )
            return BatchOutcome.SKIPPED
        if (
            batch_size != job.batch_size
            or offset != (batch_number - 1) * job.batch_size
            or batch_number < 1
            or batch_number > job.total_batches
        ):
            logger.warning(
                "Skipping batch %s of job %s: payload does not match the job "
                "(offset=%s batch_size=%s).",
                batch_number,
                job_id,
                offset,
                batch_size,
            )
            return BatchOutcome.SKIPPED
        if job.current_batch >= batch_number:
            self._advance(job=job, batch_number=batch_number)
            return BatchOutcome.ALREADY_APPLIED
        if job.current_batch != batch_number - 1:
            logger.warning(
                "Skipping batch %s of job %s: previous batch not applied (current_batch=%s).",
                batch_number,
                job_id,
                job.current_batch,
            )
            return BatchOutcome.SKIPPED

        try:
            return self._run_batch(job=job, batch_number=batch_number, offset=offset)
        except Exception as error:
            logger.exception("Batch %s of job %s failed.", batch_number, job_id)
            self.jobs.transition(
                job_id,
                to_status=JobStatus.FAILED,
                error=JobError(
                    batch=batch_number,
                    item_id=None,
                    message=f"Batch failed: {error}",
                    critical=True,
                ),
            )
            raise

    def finalize(self, job_id: str) -> JobStatus:
        """Recompute display order and mark the job complete."""

        try:
            updated = self.repository.apply_display_order()
        except Exception as error:
            logger.exception("Display ordering failed for job %s.", job_id)
            self.jobs.transition(
                job_id,
                to_status=JobStatus.FAILED,
                error=JobError(
                    batch=0,
                    item_id=None,
                    message=f"Finalization failed: {error}",
                    critical=True,
                ),
            )
            return JobStatus.FAILED
        if self.jobs.transition(job_id, to_status=JobStatus.COMPLETE):
            logger.info("Completed prioritization job %s (ordered=%s).", job_id, updated)
            return JobStatus.COMPLETE
        job = self.jobs.get(job_id)
        return job.status if job is not None else JobStatus.FAILED

    def cancel(self) -> CancelResult:
        """Drop queued batches and mark the running job cancelled."""

        cancelled_tasks = self.queue.cancel_group(group=self.settings.group_name)
        running = self.jobs.running()
        job_id: str | None = None
        if running is not None and self.jobs.transition(
            running.job_id,
            to_status=JobStatus.CANCELLED,
        ):
            job_id = running.job_id
            logger.info(
                "Cancelled prioritization job %s (queued batches dropped=%s).",
                job_id,
                cancelled_tasks,
            )
        return CancelResult(job_id=job_id, cancelled_tasks=cancelled_tasks)

    def progress(self) -> JobView | IdleSnapshot:
        job = self.jobs.current()
        return job if job is not None else IDLE

    def sweep_stale(self) -> str | None:
        """Time out a running job that has been running for too long."""

        stale_after = timedelta(seconds=self.settings.job_stale_after_seconds)
        job = self.jobs.find_stale_running(stale_after=stale_after)
        if job is None:
            return None
        timed_out = self.jobs.transition(
            job.job_id,
            to_status=JobStatus.TIMEOUT,
            error=JobError(
                batch=job.current_batch,
                item_id=None,
                message=f"Job timed out after running longer than {stale_after}.",
                critical=True,
            ),
        )
        if not timed_out:
            return None
        dropped = self.queue.cancel_group(group=self.settings.group_name)
        logger.warning(
            "Timed out stale prioritization job %s (started_at=%s queued batches dropped=%s).",
            job.job_id,
            job.started_at.isoformat(),
            dropped,
        )
        return job.job_id

    def _run_batch(self, *, job: JobView, batch_number: int, offset: int) -> BatchOutcome:
        item_ids = self.repository.list_published_item_ids(offset=offset, limit=job.batch_size)
        if not item_ids:
            raise BatchFatalError(
                f"No items found for batch {batch_number} (offset={offset}).",
            )

        counters = BatchCounters()
        for item_id in item_ids:
            result = self.processor.process(item_id)
            counters.processed += 1
            if result.cache_hit:
                counters.cache_hits += 1
            if result.success:
                counters.succeeded += 1
            else:
                counters.errors.append(
                    JobError(
                        batch=batch_number,
                        item_id=item_id,
                        message=result.error or "unknown error",
                    ),
                )

        applied = self.jobs.apply_batch(
            job.job_id,
            expected_batch=batch_number - 1,
            batch_number=batch_number,
            counters=counters,
        )
        if not applied:
            current = self.jobs.get(job.job_id)
            if current is None or current.status != JobStatus.RUNNING:
                logger.info(
                    "Job %s stopped while batch %s was running (status=%s).",
                    job.job_id,
                    batch_number,
                    current.status.value if current is not None else "missing",
                )
                return BatchOutcome.CANCELLED
            self._advance(job=current, batch_number=batch_number)
            return BatchOutcome.ALREADY_APPLIED

        logger.info(
            "Applied batch %s/%s of job %s (items=%s ok=%s errors=%s cache_hits=%s).",
            batch_number,
            job.total_batches,
            job.job_id,
            counters.processed,
            counters.succeeded,
            len(counters.errors),
            counters.cache_hits,
        )
        self._advance(job=job, batch_number=batch_number)
        return BatchOutcome.PROCESSED

    def _advance(self, *, job: JobView, batch_number: int) -> None:
        if batch_number * job.batch_size < job.total_items:
            self._enqueue_batch(
                job_id=job.job_id,
                batch_number=batch_number + 1,
                batch_size=job.batch_size,
            )
            return
        self.finalize(job.job_id)

    def _enqueue_batch(self, *, job_id: str, batch_number: int, batch_size: int) -> None:
        self.queue.enqueue(
            PRIORITIZE_BATCH_TASK,
            {
                "job_id": job_id,
                "batch_number": batch_number,
                "offset": (batch_number - 1) * batch_size,
                "batch_size": batch_size,
            },
            group=self.settings.group_name,
            dedup_key=f"{job_id}:{batch_number}",
            max_attempts=self.task_max_attempts,
        )
