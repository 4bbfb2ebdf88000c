from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import allure
import pytest

from conftest import FakeMetricsSource, item_url
from content_refresh.config import PrioritizationSettings
from content_refresh.errors import (
    BatchFatalError,
    JobAlreadyRunningError,
    MetricsSourceUnavailableError,
    NothingToDoError,
)
from content_refresh.models import IDLE, BatchOutcome, ItemResult, JobStatus, JobView
from content_refresh.prioritization.jobs import JobRepository
from content_refresh.prioritization.orchestrator import PRIORITIZE_BATCH_TASK, BatchOrchestrator
from content_refresh.prioritization.processor import ItemProcessor
from content_refresh.queue import TaskQueueRepository, TaskStatus, TaskWorker
from content_refresh.repository import ContentRepository

pytestmark = [
    allure.epic("Prioritization"),
    allure.feature("Batch Orchestrator"),
]

GROUP = PrioritizationSettings().group_name


@pytest.fixture()
def jobs(db_path: Path, repository: ContentRepository) -> Iterator[JobRepository]:
    repo = JobRepository(db_path)
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def queue(db_path: Path, repository: ContentRepository) -> Iterator[TaskQueueRepository]:
    repo = TaskQueueRepository(db_path)
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def orchestrator(
    repository: ContentRepository,
    jobs: JobRepository,
    queue: TaskQueueRepository,
    metrics_source: FakeMetricsSource,
) -> BatchOrchestrator:
    return BatchOrchestrator(
        repository=repository,
        jobs=jobs,
        queue=queue,
        processor=ItemProcessor(repository=repository, metrics_source=metrics_source),
        metrics_source=metrics_source,
        settings=PrioritizationSettings(batch_size=100),
    )


def _worker(queue: TaskQueueRepository, orchestrator: BatchOrchestrator) -> TaskWorker:
    worker = TaskWorker(
        repository=queue,
        worker_id="test-worker",
        poll_interval_seconds=0,
        retry_base_seconds=0,
        retry_max_seconds=0,
    )
    orchestrator.register(worker)
    return worker


def _job(jobs: JobRepository, job_id: str) -> JobView:
    job = jobs.get(job_id)
    assert job is not None
    return job


def test_job_processes_every_item_in_sequential_batches(
    orchestrator: BatchOrchestrator,
    jobs: JobRepository,
    queue: TaskQueueRepository,
    repository: ContentRepository,
    seed_items: Callable[..., list[int]],
) -> None:
    seed_items(250)

    started = orchestrator.start()
    summary = _worker(queue, orchestrator).run_loop(max_idle_polls=1)

    assert started.total_items == 250
    assert started.total_batches == 3
    assert summary.processed == 3
    assert summary.succeeded == 3

    job = _job(jobs, started.job_id)
    assert job.status == JobStatus.COMPLETE
    assert job.current_batch == 3
    assert job.processed_count == 250
    assert job.success_count == 250
    assert job.errors == []
    assert job.percent_complete == 100.0
    assert job.completed_at is not None

    tracked = repository.list_tracked_items(include_excluded=False)
    assert len(tracked) == 250
    assert sorted(item.display_order for item in tracked) == list(range(250))

    batches = sorted(
        task.payload["batch_number"]
        for task in queue.list_tasks(group=GROUP, status=TaskStatus.SUCCEEDED)
    )
    assert batches == [1, 2, 3]


def test_item_failure_is_recorded_and_batch_continues(
    orchestrator: BatchOrchestrator,
    jobs: JobRepository,
    queue: TaskQueueRepository,
    metrics_source: FakeMetricsSource,
    seed_items: Callable[..., list[int]],
) -> None:
    seed_items(5)
    metrics_source.failing_keys.add(item_url(3))

    started = orchestrator.start()
    _worker(queue, orchestrator).run_loop(max_idle_polls=1)

    job = _job(jobs, started.job_id)
    assert job.status == JobStatus.COMPLETE
    assert job.processed_count == 5
    assert job.success_count == 4
    assert len(job.errors) == 1
    assert job.errors[0].item_id == 3
    assert job.errors[0].batch == 1
    assert job.errors[0].critical is False


def test_second_start_is_rejected_while_running(
    orchestrator: BatchOrchestrator,
    seed_items: Callable[..., list[int]],
) -> None:
    seed_items(3)
    started = orchestrator.start()

    with pytest.raises(JobAlreadyRunningError) as excinfo:
        orchestrator.start()

    assert excinfo.value.job_id == started.job_id


def test_start_requires_authenticated_metrics_source(
    orchestrator: BatchOrchestrator,
    metrics_source: FakeMetricsSource,
    jobs: JobRepository,
    seed_items: Callable[..., list[int]],
) -> None:
    seed_items(3)
    metrics_source.authenticated = False

    with pytest.raises(MetricsSourceUnavailableError):
        orchestrator.start()

    assert jobs.current() is None


def test_start_without_published_items_is_nothing_to_do(
    orchestrator: BatchOrchestrator,
    jobs: JobRepository,
) -> None:
    with pytest.raises(NothingToDoError):
        orchestrator.start()

    assert jobs.current() is None


def test_cancel_stops_job_and_drops_queued_batches(
    orchestrator: BatchOrchestrator,
    jobs: JobRepository,
    queue: TaskQueueRepository,
    seed_items: Callable[..., list[int]],
) -> None:
    seed_items(250)
    started = orchestrator.start()
    worker = _worker(queue, orchestrator)
    worker.run_once()

    result = orchestrator.cancel()
    summary = worker.run_loop(max_idle_polls=1)

    assert result.job_id == started.job_id
    assert result.cancelled_tasks == 1
    assert summary.processed == 0
    job = _job(jobs, started.job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.current_batch == 1
    assert job.processed_count == 100
    assert (
        orchestrator.handle_batch(
            job_id=started.job_id,
            batch_number=2,
            offset=100,
            batch_size=100,
        )
        == BatchOutcome.SKIPPED
    )


def test_cancel_during_batch_discards_its_counters(
    orchestrator: BatchOrchestrator,
    jobs: JobRepository,
    monkeypatch: pytest.MonkeyPatch,
    seed_items: Callable[..., list[int]],
) -> None:
    seed_items(3)
    started = orchestrator.start()
    process = orchestrator.processor.process
    calls: list[int] = []

    def _cancel_on_first_item(item_id: int) -> ItemResult:
        calls.append(item_id)
        if len(calls) == 1:
            orchestrator.cancel()
        return process(item_id)

    monkeypatch.setattr(orchestrator.processor, "process", _cancel_on_first_item)

    outcome = orchestrator.handle_batch(
        job_id=started.job_id,
        batch_number=1,
        offset=0,
        batch_size=100,
    )

    assert outcome == BatchOutcome.CANCELLED
    job = _job(jobs, started.job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.processed_count == 0
    assert job.current_batch == 0


def test_cancel_without_running_job_still_drops_queued_batches(
    orchestrator: BatchOrchestrator,
    queue: TaskQueueRepository,
) -> None:
    queue.enqueue(PRIORITIZE_BATCH_TASK, {"job_id": "gone"}, group=GROUP)

    result = orchestrator.cancel()

    assert result.job_id is None
    assert result.cancelled_tasks == 1


def test_replayed_batch_is_not_counted_twice(
    orchestrator: BatchOrchestrator,
    jobs: JobRepository,
    queue: TaskQueueRepository,
    seed_items: Callable[..., list[int]],
) -> None:
    seed_items(150)
    started = orchestrator.start()

    first = orchestrator.handle_batch(
        job_id=started.job_id,
        batch_number=1,
        offset=0,
        batch_size=100,
    )
    replay = orchestrator.handle_batch(
        job_id=started.job_id,
        batch_number=1,
        offset=0,
        batch_size=100,
    )

    assert first == BatchOutcome.PROCESSED
    assert replay == BatchOutcome.ALREADY_APPLIED
    job = _job(jobs, started.job_id)
    assert job.current_batch == 1
    assert job.processed_count == 100
    queued = sorted(
        task.payload["batch_number"]
        for task in queue.list_tasks(group=GROUP, status=TaskStatus.QUEUED)
    )
    assert queued == [1, 2]


@pytest.mark.parametrize(
    ("batch_number", "offset", "batch_size"),
    [
        (1, 50, 100),
        (1, 0, 50),
        (2, 100, 100),
        (9, 800, 100),
    ],
)
def test_mismatched_or_out_of_order_batches_are_skipped(
    orchestrator: BatchOrchestrator,
    jobs: JobRepository,
    seed_items: Callable[..., list[int]],
    batch_number: int,
    offset: int,
    batch_size: int,
) -> None:
    seed_items(150)
    started = orchestrator.start()

    outcome = orchestrator.handle_batch(
        job_id=started.job_id,
        batch_number=batch_number,
        offset=offset,
        batch_size=batch_size,
    )

    assert outcome == BatchOutcome.SKIPPED
    assert _job(jobs, started.job_id).current_batch == 0


def test_unknown_job_batch_is_skipped(orchestrator: BatchOrchestrator) -> None:
    outcome = orchestrator.handle_task(
        {"job_id": "pr_missing", "batch_number": 1, "offset": 0, "batch_size": 100},
    )

    assert outcome == BatchOutcome.SKIPPED


def test_empty_batch_slice_fails_the_job(
    orchestrator: BatchOrchestrator,
    jobs: JobRepository,
    repository: ContentRepository,
    seed_items: Callable[..., list[int]],
) -> None:
    seed_items(150)
    started = orchestrator.start()
    orchestrator.handle_batch(job_id=started.job_id, batch_number=1, offset=0, batch_size=100)
    for item_id in range(1, 61):
        repository.delete_item(item_id)

    with pytest.raises(BatchFatalError):
        orchestrator.handle_batch(
            job_id=started.job_id,
            batch_number=2,
            offset=100,
            batch_size=100,
        )

    job = _job(jobs, started.job_id)
    assert job.status == JobStatus.FAILED
    assert job.errors[-1].critical is True
    assert job.errors[-1].batch == 2

    retried = orchestrator.handle_batch(
        job_id=started.job_id,
        batch_number=2,
        offset=100,
        batch_size=100,
    )

    assert retried == BatchOutcome.SKIPPED
    assert len(_job(jobs, started.job_id).errors) == len(job.errors)


def test_stale_job_is_timed_out_and_a_new_one_can_start(
    orchestrator: BatchOrchestrator,
    jobs: JobRepository,
    queue: TaskQueueRepository,
    repository: ContentRepository,
    seed_items: Callable[..., list[int]],
) -> None:
    seed_items(3)
    stale = orchestrator.start()
    repository._connection.execute(
        "UPDATE prioritization_jobs SET started_at = '2000-01-01 00:00:00.000000'",
    )
    repository._connection.commit()

    fresh = orchestrator.start()

    assert fresh.job_id != stale.job_id
    timed_out = _job(jobs, stale.job_id)
    assert timed_out.status == JobStatus.TIMEOUT
    assert timed_out.errors[-1].critical is True
    assert queue.count_tasks(group=GROUP, status=TaskStatus.CANCELED) == 1
    assert _job(jobs, fresh.job_id).status == JobStatus.RUNNING


def test_sweep_ignores_recent_jobs(
    orchestrator: BatchOrchestrator,
    seed_items: Callable[..., list[int]],
) -> None:
    seed_items(3)
    orchestrator.start()

    assert orchestrator.sweep_stale() is None


def test_progress_reports_idle_then_job_snapshot(
    orchestrator: BatchOrchestrator,
    seed_items: Callable[..., list[int]],
) -> None:
    assert orchestrator.progress() is IDLE

    seed_items(3)
    started = orchestrator.start()
    snapshot = orchestrator.progress()

    assert isinstance(snapshot, JobView)
    assert snapshot.job_id == started.job_id
    assert snapshot.status == JobStatus.RUNNING
    assert snapshot.percent_complete == 0.0
