"""Controllers for content-refresh CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from content_refresh.analysis import AnalysisPipeline
from content_refresh.backends import CommandTextGenerator, EchoTextGenerator, JsonFileMetricsSource
from content_refresh.collaborators import TextGenerator
from content_refresh.config import Settings
from content_refresh.drafts.pipeline import DraftPipeline
from content_refresh.errors import ContentRefreshError
from content_refresh.leases import LeaseManager
from content_refresh.models import (
    AnalysisStatus,
    ContentItemWrite,
    DraftStatus,
    IdleSnapshot,
    ItemStatus,
    JobView,
    ReconcileReport,
)
from content_refresh.prioritization.jobs import JobRepository
from content_refresh.prioritization.orchestrator import BatchOrchestrator
from content_refresh.prioritization.processor import ItemProcessor
from content_refresh.queue.repository import TaskQueueRepository
from content_refresh.queue.worker import TaskWorker
from content_refresh.reconcile import StatusReconciler
from content_refresh.repository import ContentRepository
from content_refresh.scoring import estimate_click_potential
from content_refresh.storage.common import from_iso

DEFAULT_METRICS_FILE = Path("metrics.json")
MAX_ERRORS_SHOWN = 10


@dataclass(slots=True)
class ItemsImportCommand:
    """CLI input for importing content items from a JSON file."""

    db_path: Path | None
    input_path: Path


@dataclass(slots=True)
class ItemsListCommand:
    db_path: Path | None
    limit: int
    analysis_status: str | None = None
    draft_status: str | None = None


@dataclass(slots=True)
class ItemCommand:
    """CLI input for single-item operations."""

    db_path: Path | None
    item_id: int


@dataclass(slots=True)
class ItemExcludeCommand:
    db_path: Path | None
    item_id: int
    excluded: bool


@dataclass(slots=True)
class PrioritizeCommand:
    """CLI input for prioritization job operations."""

    db_path: Path | None
    metrics_file: Path | None = None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1
    metrics_file: Path | None = None


@dataclass(slots=True)
class ReconcileCommand:
    db_path: Path | None
    prune_orphans: bool = False


@dataclass(slots=True)
class PotentialCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class Services:
    """Storage handles shared by one CLI invocation."""

    settings: Settings
    repository: ContentRepository
    jobs: JobRepository
    queue: TaskQueueRepository
    leases: LeaseManager


class ContentRefreshCliController:
    """Coordinates items, prioritization, worker, and single-item CLI operations."""

    def import_items(self, command: ItemsImportCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        items = _read_items_file(command.input_path)
        with _services(settings) as services:
            for item in items:
                services.repository.upsert_item(item)
        published = sum(1 for item in items if item.status == ItemStatus.PUBLISHED)
        return [f"Imported items: total={len(items)} published={published}"]

    def list_items(self, command: ItemsListCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            rows = services.repository.list_tracked_items(
                analysis_status=(
                    AnalysisStatus(command.analysis_status) if command.analysis_status else None
                ),
                draft_status=DraftStatus(command.draft_status) if command.draft_status else None,
                limit=command.limit,
            )
        if not rows:
            return ["No tracked items."]
        lines = ["order item_id priority age decline potential clicks analysis draft"]
        for row in rows:
            marker = " (excluded)" if row.excluded else ""
            lines.append(
                f"{row.display_order} {row.item_id} {row.priority_score} "
                f"{row.content_age_score} {row.traffic_decline_score} "
                f"{row.traffic_potential_score} {row.current.clicks} "
                f"{row.analysis_status.value} {row.draft_status.value}{marker}",
            )
        return lines

    def set_excluded(self, command: ItemExcludeCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            services.repository.set_excluded(command.item_id, excluded=command.excluded)
            services.repository.apply_display_order()
        state = "excluded" if command.excluded else "included"
        return [f"Item {command.item_id} {state} from display ordering."]

    def remove_item(self, command: ItemCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            result = services.repository.delete_item(command.item_id)
        return [
            f"Removed item {command.item_id}: tracked={result.tracked_deleted} "
            f"analyses={result.analyses_deleted} drafts={result.drafts_deleted}",
        ]

    def start_prioritization(self, command: PrioritizeCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            started = _orchestrator(services, metrics_file=command.metrics_file).start()
        return [
            f"Prioritization started: job_id={started.job_id} "
            f"items={started.total_items} batches={started.total_batches}",
            "Run `content-refresh worker --loop` to process batches.",
        ]

    def progress(self, command: PrioritizeCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        lines: list[str] = []
        with _services(settings) as services:
            if settings.reconcile.run_on_progress:
                report = _reconciler(services).reconcile()
                lines.extend(_render_reconcile_summary(report, quiet=True))
            snapshot = _orchestrator(services, metrics_file=command.metrics_file).progress()
        return _render_progress(snapshot) + lines

    def cancel(self, command: PrioritizeCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            result = _orchestrator(services, metrics_file=command.metrics_file).cancel()
        if result.job_id is None:
            return [f"No running job. Dropped queued batches: {result.cancelled_tasks}"]
        return [
            f"Cancelled job {result.job_id}. Dropped queued batches: {result.cancelled_tasks}",
        ]

    def sweep(self, command: PrioritizeCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            job_id = _orchestrator(services, metrics_file=command.metrics_file).sweep_stale()
        if job_id is None:
            return ["No stale job found."]
        return [f"Timed out stale job {job_id}."]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            worker = TaskWorker(
                repository=services.queue,
                worker_id=settings.worker.worker_id,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                retry_base_seconds=settings.worker.retry_base_seconds,
                retry_max_seconds=settings.worker.retry_max_seconds,
                stale_task_seconds=settings.worker.stale_task_seconds,
            )
            _orchestrator(services, metrics_file=command.metrics_file).register(worker)
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"idle_polls={summary.idle_polls}",
        ]

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            reconciler = _reconciler(services)
            report = reconciler.reconcile()
            lines = _render_reconcile_summary(report, quiet=False)
            if command.prune_orphans:
                pruned = reconciler.prune_orphans()
                lines.append(
                    f"Pruned orphans: tracked={pruned.tracked_deleted} "
                    f"analyses={pruned.analyses_deleted} drafts={pruned.drafts_deleted}",
                )
        return lines

    def analyze(self, command: ItemCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            pipeline = AnalysisPipeline(
                repository=services.repository,
                leases=services.leases,
                generator=_generator(settings),
                settings=settings.leases,
            )
            record = pipeline.analyze(command.item_id)
        lines = [
            f"Analysis completed: item_id={record.item_id} issues={record.issues_count} "
            f"seconds={record.processing_seconds}",
        ]
        lines.append(_render_usage(record.usage.total_tokens, record.estimated_cost_usd))
        summary = (record.findings or {}).get("summary")
        if summary:
            lines.append(f"Summary: {summary}")
        return lines

    def create_draft(self, command: ItemCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            record = _draft_pipeline(services).create(command.item_id)
        diff = (record.artifact or {}).get("diff", {})
        changed = ", ".join(diff.get("changed_fields", [])) or "none"
        return [
            f"Draft created: item_id={record.item_id} changed_fields={changed} "
            f"+{diff.get('lines_added', 0)}/-{diff.get('lines_removed', 0)}",
            _render_usage(record.usage.total_tokens, record.estimated_cost_usd),
        ]

    def approve_draft(self, command: ItemCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            item = _draft_pipeline(services).approve(command.item_id)
        return [f"Draft approved and applied: item_id={item.item_id} title={item.title!r}"]

    def reject_draft(self, command: ItemCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            _draft_pipeline(services).reject(command.item_id)
        return [f"Draft rejected: item_id={command.item_id}"]

    def potential(self, command: PotentialCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _services(settings) as services:
            rows = services.repository.list_tracked_items(include_excluded=False)
        report = estimate_click_potential(rows, limit=command.limit)
        lines = [f"Total potential clicks: {report.total_potential_clicks}"]
        for entry in report.items:
            outperforming = " outperforming" if entry.is_outperforming else ""
            lines.append(
                f"item_id={entry.item_id} clicks={entry.current_clicks} "
                f"position={entry.current_position:.1f}->{entry.improved_position:.1f} "
                f"target_ctr={entry.effective_target_ctr:.4f} "
                f"potential=+{entry.potential_clicks}{outperforming}",
            )
        return lines


@contextmanager
def _services(settings: Settings) -> Iterator[Services]:
    repository = ContentRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    jobs = JobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        ttl_seconds=settings.prioritization.job_ttl_seconds,
    )
    queue = TaskQueueRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    leases = LeaseManager(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        yield Services(
            settings=settings,
            repository=repository,
            jobs=jobs,
            queue=queue,
            leases=leases,
        )
    finally:
        leases.close()
        queue.close()
        jobs.close()
        repository.close()


def _load_settings(db_path: Path | None) -> Settings:
    try:
        settings = Settings.from_env(db_path=db_path)
        settings.validate()
    except ValueError as error:
        raise ContentRefreshError(f"Invalid configuration: {error}") from error
    return settings


def _orchestrator(services: Services, *, metrics_file: Path | None) -> BatchOrchestrator:
    settings = services.settings
    metrics_source = JsonFileMetricsSource(
        metrics_file or settings.metrics.metrics_file or DEFAULT_METRICS_FILE,
    )
    processor = ItemProcessor(
        repository=services.repository,
        metrics_source=metrics_source,
        settings=settings.metrics,
        age_date_source=settings.prioritization.age_date_source,
    )
    return BatchOrchestrator(
        repository=services.repository,
        jobs=services.jobs,
        queue=services.queue,
        processor=processor,
        metrics_source=metrics_source,
        settings=settings.prioritization,
        task_max_attempts=settings.worker.max_attempts,
    )


def _reconciler(services: Services) -> StatusReconciler:
    return StatusReconciler(
        repository=services.repository,
        leases=services.leases,
        grace_seconds=services.settings.reconcile.grace_seconds,
    )


def _draft_pipeline(services: Services) -> DraftPipeline:
    return DraftPipeline(
        repository=services.repository,
        leases=services.leases,
        generator=_generator(services.settings),
        settings=services.settings.leases,
    )


def _generator(settings: Settings) -> TextGenerator:
    generation = settings.generation
    if not generation.command_template:
        return EchoTextGenerator(model=generation.model)
    return CommandTextGenerator(
        command_template=generation.command_template,
        agent=generation.agent,
        model=generation.model,
        timeout_seconds=generation.timeout_seconds,
    )


def _read_items_file(path: Path) -> list[ContentItemWrite]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ContentRefreshError(f"Cannot read items file {path}: {error}") from error
    raw_items = payload.get("items") if isinstance(payload, dict) else payload
    if not isinstance(raw_items, list):
        raise ContentRefreshError(f"Items file {path} must contain a list of items.")
    return [_to_item_write(raw, index=index) for index, raw in enumerate(raw_items)]


def _to_item_write(raw: Any, *, index: int) -> ContentItemWrite:
    if not isinstance(raw, dict):
        raise ContentRefreshError(f"Item #{index} must be an object.")
    try:
        modified_raw = raw.get("modified_at")
        return ContentItemWrite(
            item_id=int(raw["item_id"]),
            url=str(raw["url"]),
            title=str(raw.get("title") or ""),
            published_at=from_iso(str(raw["published_at"])),
            content=str(raw.get("content") or ""),
            excerpt=str(raw.get("excerpt") or ""),
            meta_title=raw.get("meta_title"),
            meta_description=raw.get("meta_description"),
            status=ItemStatus(str(raw.get("status") or ItemStatus.PUBLISHED.value)),
            modified_at=from_iso(str(modified_raw)) if modified_raw else None,
        )
    except (KeyError, ValueError) as error:
        raise ContentRefreshError(f"Item #{index} is invalid: {error}") from error


def _render_progress(snapshot: JobView | IdleSnapshot) -> list[str]:
    if isinstance(snapshot, IdleSnapshot):
        return [f"No prioritization job (status={snapshot.status})."]
    lines = [
        f"Job {snapshot.job_id}: status={snapshot.status.value} "
        f"batch={snapshot.current_batch}/{snapshot.total_batches} "
        f"processed={snapshot.processed_count}/{snapshot.total_items} "
        f"({snapshot.percent_complete}%) ok={snapshot.success_count} "
        f"cache_hits={snapshot.cache_hit_count} errors={len(snapshot.errors)}",
        f"Started: {_fmt(snapshot.started_at)} Updated: {_fmt(snapshot.last_update_at)}"
        + (f" Completed: {_fmt(snapshot.completed_at)}" if snapshot.completed_at else ""),
    ]
    for error in snapshot.errors[:MAX_ERRORS_SHOWN]:
        prefix = "CRITICAL " if error.critical else ""
        target = f"item {error.item_id}" if error.item_id is not None else "job"
        lines.append(f"  {prefix}batch {error.batch} {target}: {error.message}")
    hidden = len(snapshot.errors) - MAX_ERRORS_SHOWN
    if hidden > 0:
        lines.append(f"  ... {hidden} more errors")
    return lines


def _render_reconcile_summary(report: ReconcileReport, *, quiet: bool) -> list[str]:
    if quiet and report.repaired_count == 0:
        return []
    lines = [
        f"Reconciled: reset={len(report.reset)} interrupted={len(report.interrupted)} "
        f"deleted_drafts={len(report.deleted_drafts)} untouched={len(report.untouched)}",
    ]
    for entry in report.interrupted:
        lines.append(f"  Interrupted {entry.kind} for item {entry.item_id}; retry is available.")
    return lines


def _render_usage(total_tokens: int | None, cost: float | None) -> str:
    tokens = total_tokens if total_tokens is not None else "n/a"
    cost_text = f"${cost:.4f}" if cost is not None else "n/a"
    return f"Usage: tokens={tokens} estimated_cost={cost_text}"


def _fmt(value: datetime | None) -> str:
    return value.isoformat(timespec="seconds") if value is not None else "-"
