from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from conftest import NOW
from content_refresh.errors import JobAlreadyRunningError
from content_refresh.models import BatchCounters, JobError, JobStatus
from content_refresh.prioritization.jobs import JobRepository, new_job_id
from content_refresh.repository import ContentRepository

pytestmark = [
    allure.epic("Prioritization"),
    allure.feature("Job Records"),
]


@pytest.fixture()
def jobs(db_path: Path, repository: ContentRepository) -> Iterator[JobRepository]:
    repo = JobRepository(db_path)
    try:
        yield repo
    finally:
        repo.close()


def _expire_all(repository: ContentRepository) -> None:
    repository._connection.execute(
        "UPDATE prioritization_jobs SET expires_at = '2000-01-01 00:00:00.000000'",
    )
    repository._connection.commit()


def test_new_job_id_embeds_start_time() -> None:
    job_id = new_job_id(NOW)

    prefix, timestamp, suffix = job_id.split("_")
    assert prefix == "pr"
    assert int(timestamp) == int(NOW.timestamp())
    assert len(suffix) == 8


def test_only_one_running_job_can_exist(jobs: JobRepository) -> None:
    first = jobs.create(total_items=10, total_batches=1, batch_size=100)

    with pytest.raises(JobAlreadyRunningError):
        jobs.create(total_items=10, total_batches=1, batch_size=100)

    assert jobs.transition(first.job_id, to_status=JobStatus.COMPLETE) is True
    second = jobs.create(total_items=10, total_batches=1, batch_size=100)
    assert second.status == JobStatus.RUNNING


def test_apply_batch_is_compare_and_set_on_current_batch(jobs: JobRepository) -> None:
    job = jobs.create(total_items=150, total_batches=2, batch_size=100)
    counters = BatchCounters(
        processed=100,
        succeeded=99,
        cache_hits=5,
        errors=[JobError(batch=1, item_id=7, message="boom")],
    )

    assert jobs.apply_batch(job.job_id, expected_batch=0, batch_number=1, counters=counters)
    assert not jobs.apply_batch(job.job_id, expected_batch=0, batch_number=1, counters=counters)

    stored = jobs.get(job.job_id)
    assert stored is not None
    assert stored.current_batch == 1
    assert stored.processed_count == 100
    assert stored.success_count == 99
    assert stored.cache_hit_count == 5
    assert stored.errors == [JobError(batch=1, item_id=7, message="boom")]


def test_processed_count_never_exceeds_total(jobs: JobRepository) -> None:
    job = jobs.create(total_items=50, total_batches=1, batch_size=100)

    jobs.apply_batch(
        job.job_id,
        expected_batch=0,
        batch_number=1,
        counters=BatchCounters(processed=80, succeeded=80),
    )

    stored = jobs.get(job.job_id)
    assert stored is not None
    assert stored.processed_count == 50


def test_terminal_status_is_final(jobs: JobRepository) -> None:
    job = jobs.create(total_items=1, total_batches=1, batch_size=100)

    assert jobs.transition(job.job_id, to_status=JobStatus.CANCELLED) is True
    assert jobs.transition(job.job_id, to_status=JobStatus.COMPLETE) is False
    assert not jobs.apply_batch(
        job.job_id,
        expected_batch=0,
        batch_number=1,
        counters=BatchCounters(processed=1),
    )
    with pytest.raises(ValueError, match="running"):
        jobs.transition(job.job_id, to_status=JobStatus.RUNNING)

    stored = jobs.get(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.CANCELLED
    assert stored.completed_at is not None


def test_expired_jobs_read_as_absent_and_are_purged(
    jobs: JobRepository,
    repository: ContentRepository,
) -> None:
    job = jobs.create(total_items=1, total_batches=1, batch_size=100)
    jobs.transition(job.job_id, to_status=JobStatus.COMPLETE)
    _expire_all(repository)

    assert jobs.get(job.job_id) is None
    assert jobs.current() is None
    assert jobs.purge_expired() == 1


def test_expired_running_job_is_kept_for_the_sweep(
    jobs: JobRepository,
    repository: ContentRepository,
) -> None:
    job = jobs.create(total_items=1, total_batches=1, batch_size=100)
    _expire_all(repository)

    assert jobs.purge_expired() == 0
    running = jobs.running()
    assert running is not None
    assert running.job_id == job.job_id
