from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from conftest import make_item
from content_refresh.leases import LeaseManager, analysis_lease_key, draft_lease_key
from content_refresh.models import AnalysisStatus, DraftStatus, ReconcileEntry, TokenUsage
from content_refresh.reconcile import StatusReconciler
from content_refresh.repository import ContentRepository
from content_refresh.storage.common import utc_now

pytestmark = [
    allure.epic("Single-item Operations"),
    allure.feature("Status Reconciler"),
]


@pytest.fixture()
def leases(db_path: Path, repository: ContentRepository) -> Iterator[LeaseManager]:
    manager = LeaseManager(db_path)
    try:
        yield manager
    finally:
        manager.close()


def _reconciler(
    repository: ContentRepository,
    leases: LeaseManager,
    *,
    later: timedelta = timedelta(0),
) -> StatusReconciler:
    return StatusReconciler(
        repository=repository,
        leases=leases,
        grace_seconds=120,
        clock=lambda: utc_now() + later,
    )


def test_recent_crash_is_reported_as_interrupted(
    repository: ContentRepository,
    leases: LeaseManager,
) -> None:
    repository.upsert_item(make_item(1))
    repository.start_analysis(1)
    repository.set_analysis_status(1, AnalysisStatus.ANALYZING)

    report = _reconciler(repository, leases).reconcile()

    assert report.interrupted == [ReconcileEntry(1, "analysis", "interrupted")]
    assert report.reset == []
    tracked = repository.get_tracked_item(1)
    record = repository.get_analysis(1)
    assert tracked is not None
    assert tracked.analysis_status == AnalysisStatus.PENDING
    assert record is not None
    assert record.status == AnalysisStatus.PENDING


def test_old_crash_is_reported_as_reset(
    repository: ContentRepository,
    leases: LeaseManager,
) -> None:
    repository.set_analysis_status(1, AnalysisStatus.ANALYZING)

    report = _reconciler(repository, leases, later=timedelta(minutes=10)).reconcile()

    assert report.reset == [ReconcileEntry(1, "analysis", "reset")]
    assert report.interrupted == []


def test_live_lease_leaves_item_untouched(
    repository: ContentRepository,
    leases: LeaseManager,
) -> None:
    repository.set_analysis_status(1, AnalysisStatus.ANALYZING)
    repository.set_draft_status(2, DraftStatus.CREATING)
    leases.acquire(analysis_lease_key(1), ttl_seconds=300)
    leases.acquire(draft_lease_key(2), ttl_seconds=1200)

    report = _reconciler(repository, leases).reconcile()

    assert report.untouched == [
        ReconcileEntry(1, "analysis", "lease_held"),
        ReconcileEntry(2, "draft", "lease_held"),
    ]
    assert report.repaired_count == 0
    first = repository.get_tracked_item(1)
    second = repository.get_tracked_item(2)
    assert first is not None
    assert first.analysis_status == AnalysisStatus.ANALYZING
    assert second is not None
    assert second.draft_status == DraftStatus.CREATING


def test_crashed_draft_without_artifact_is_deleted(
    repository: ContentRepository,
    leases: LeaseManager,
) -> None:
    repository.start_draft(1)
    repository.set_draft_status(1, DraftStatus.CREATING)

    report = _reconciler(repository, leases).reconcile()

    assert report.deleted_drafts == [1]
    assert report.interrupted == [ReconcileEntry(1, "draft", "interrupted")]
    assert repository.get_draft(1) is None
    tracked = repository.get_tracked_item(1)
    assert tracked is not None
    assert tracked.draft_status == DraftStatus.PENDING


def test_crashed_draft_with_artifact_keeps_it(
    repository: ContentRepository,
    leases: LeaseManager,
) -> None:
    repository.save_draft(1, artifact={"content": {}}, usage=TokenUsage(), estimated_cost_usd=None)
    repository.set_draft_status(1, DraftStatus.CREATING)
    repository._connection.execute("UPDATE draft_records SET status = 'creating'")
    repository._connection.commit()

    report = _reconciler(repository, leases).reconcile()

    assert report.deleted_drafts == []
    draft = repository.get_draft(1)
    assert draft is not None
    assert draft.status == DraftStatus.PENDING
    assert draft.artifact == {"content": {}}


def test_stuck_record_without_tracked_status_is_reset(
    repository: ContentRepository,
    leases: LeaseManager,
) -> None:
    repository.start_analysis(3)

    report = _reconciler(repository, leases).reconcile()

    assert report.reset == [ReconcileEntry(3, "analysis", "record_reset")]
    record = repository.get_analysis(3)
    assert record is not None
    assert record.status == AnalysisStatus.PENDING


def test_reconcile_is_a_no_op_when_nothing_is_stuck(
    repository: ContentRepository,
    leases: LeaseManager,
) -> None:
    repository.set_analysis_status(1, AnalysisStatus.COMPLETED)

    report = _reconciler(repository, leases).reconcile()

    assert report.repaired_count == 0
    assert report.untouched == []


def test_prune_orphans_delegates_to_repository(
    repository: ContentRepository,
    leases: LeaseManager,
) -> None:
    repository.set_analysis_status(9, AnalysisStatus.COMPLETED)

    result = _reconciler(repository, leases).prune_orphans()

    assert result.tracked_deleted == 1
