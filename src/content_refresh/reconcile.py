"""Repair in-progress statuses left behind by crashed single-item operations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from content_refresh.leases import LeaseManager, analysis_lease_key, draft_lease_key
from content_refresh.models import (
    AnalysisStatus,
    DraftStatus,
    OrphanPruneResult,
    ReconcileEntry,
    ReconcileReport,
)
from content_refresh.repository import ContentRepository
from content_refresh.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)

ANALYSIS_KIND = "analysis"
DRAFT_KIND = "draft"


class StatusReconciler:
    """Reset `analyzing` / `creating` statuses whose lease no longer exists.

    A live lease means the operation is still running and the item is left
    alone. Items whose status changed within the grace window are reported as
    interrupted so a caller can offer a retry; older ones are plain resets.
    """

    def __init__(
        self,
        *,
        repository: ContentRepository,
        leases: LeaseManager,
        grace_seconds: int = 120,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.leases = leases
        self.grace = timedelta(seconds=grace_seconds)
        self._clock = clock

    def reconcile(self) -> ReconcileReport:
        report = ReconcileReport()
        now = to_utc_aware_datetime(self._clock())
        self._reconcile_tracked_analyses(report, now)
        self._reconcile_tracked_drafts(report, now)
        self._reconcile_analysis_records(report)
        self._reconcile_draft_records(report)
        if report.repaired_count:
            logger.warning(
                "Reconciled stale statuses (reset=%s interrupted=%s deleted_drafts=%s).",
                len(report.reset),
                len(report.interrupted),
                len(report.deleted_drafts),
            )
        return report

    def prune_orphans(self) -> OrphanPruneResult:
        return self.repository.prune_orphans()

    def _reconcile_tracked_analyses(self, report: ReconcileReport, now: datetime) -> None:
        for item in self.repository.list_tracked_items(analysis_status=AnalysisStatus.ANALYZING):
            if self.leases.is_held(analysis_lease_key(item.item_id)):
                report.untouched.append(ReconcileEntry(item.item_id, ANALYSIS_KIND, "lease_held"))
                continue
            if not self.repository.reset_tracked_analysis_status(
                item.item_id,
                expected=AnalysisStatus.ANALYZING,
                new=AnalysisStatus.PENDING,
            ):
                continue
            self.repository.reset_analysis_record_status(
                item.item_id,
                expected=AnalysisStatus.ANALYZING,
                new=AnalysisStatus.PENDING,
            )
            self._record(report, item.item_id, ANALYSIS_KIND, item.analysis_status_at, now)

    def _reconcile_tracked_drafts(self, report: ReconcileReport, now: datetime) -> None:
        for item in self.repository.list_tracked_items(draft_status=DraftStatus.CREATING):
            if self.leases.is_held(draft_lease_key(item.item_id)):
                report.untouched.append(ReconcileEntry(item.item_id, DRAFT_KIND, "lease_held"))
                continue
            if not self.repository.reset_tracked_draft_status(
                item.item_id,
                expected=DraftStatus.CREATING,
                new=DraftStatus.PENDING,
            ):
                continue
            self._repair_draft_record(report, item.item_id)
            self._record(report, item.item_id, DRAFT_KIND, item.draft_status_at, now)

    def _reconcile_analysis_records(self, report: ReconcileReport) -> None:
        # Records stuck without a matching tracked status.
        for record in self.repository.list_analysis_records(status=AnalysisStatus.ANALYZING):
            if self.leases.is_held(analysis_lease_key(record.item_id)):
                continue
            if self.repository.reset_analysis_record_status(
                record.item_id,
                expected=AnalysisStatus.ANALYZING,
                new=AnalysisStatus.PENDING,
            ):
                report.reset.append(ReconcileEntry(record.item_id, ANALYSIS_KIND, "record_reset"))

    def _reconcile_draft_records(self, report: ReconcileReport) -> None:
        for record in self.repository.list_draft_records(status=DraftStatus.CREATING):
            if self.leases.is_held(draft_lease_key(record.item_id)):
                continue
            self._repair_draft_record(report, record.item_id)

    def _repair_draft_record(self, report: ReconcileReport, item_id: int) -> None:
        record = self.repository.get_draft(item_id)
        if record is None or record.status != DraftStatus.CREATING:
            return
        if record.has_artifact:
            self.repository.reset_draft_record_status(
                item_id,
                expected=DraftStatus.CREATING,
                new=DraftStatus.PENDING,
            )
            return
        if self.repository.delete_draft_if_status(item_id, status=DraftStatus.CREATING):
            report.deleted_drafts.append(item_id)

    def _record(
        self,
        report: ReconcileReport,
        item_id: int,
        kind: str,
        changed_at: datetime | None,
        now: datetime,
    ) -> None:
        if changed_at is not None and now - changed_at <= self.grace:
            report.interrupted.append(ReconcileEntry(item_id, kind, "interrupted"))
            logger.warning("Reset interrupted %s for item %s.", kind, item_id)
            return
        report.reset.append(ReconcileEntry(item_id, kind, "reset"))
        logger.warning("Reset stale %s for item %s.", kind, item_id)
