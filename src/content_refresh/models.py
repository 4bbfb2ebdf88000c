"""Domain models for content scoring, jobs, and single-item pipelines."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Prioritization job lifecycle states."""

    RUNNING = "running"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"
    TIMEOUT = "timeout"


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    ERROR = "error"


class DraftStatus(str, Enum):
    PENDING = "pending"
    CREATING = "creating"
    COMPLETED = "completed"
    ERROR = "error"


class ItemStatus(str, Enum):
    """Publication state of a content item."""

    PUBLISHED = "published"
    DRAFT = "draft"


class BatchOutcome(str, Enum):
    """What one batch handler invocation ended up doing."""

    PROCESSED = "processed"
    ALREADY_APPLIED = "already_applied"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class MetricsWindow:
    """Search analytics totals for one measurement window."""

    clicks: int = 0
    impressions: int = 0
    ctr: float = 0.0
    position: float = 0.0

    def is_empty(self) -> bool:
        return self.clicks == 0 and self.impressions == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "clicks": self.clicks,
            "impressions": self.impressions,
            "ctr": self.ctr,
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> MetricsWindow:
        return cls(
            clicks=int(payload.get("clicks") or 0),
            impressions=int(payload.get("impressions") or 0),
            ctr=float(payload.get("ctr") or 0.0),
            position=float(payload.get("position") or 0.0),
        )


@dataclass(slots=True)
class ContentItemWrite:
    """Input payload for importing one content item."""

    item_id: int
    url: str
    title: str
    published_at: datetime
    content: str = ""
    excerpt: str = ""
    meta_title: str | None = None
    meta_description: str | None = None
    status: ItemStatus = ItemStatus.PUBLISHED
    modified_at: datetime | None = None


@dataclass(slots=True)
class ContentItemView:
    item_id: int
    url: str
    title: str
    content: str
    excerpt: str
    meta_title: str | None
    meta_description: str | None
    status: ItemStatus
    published_at: datetime
    modified_at: datetime | None


@dataclass(slots=True)
class ScoreWrite:
    """Metrics and scores written by one scoring pass."""

    current: MetricsWindow
    previous: MetricsWindow
    content_age_score: int
    traffic_decline_score: int
    traffic_potential_score: int
    priority_score: int


@dataclass(slots=True)
class TrackedItemView:
    """Persisted scoring and status record for one content item."""

    item_id: int
    current: MetricsWindow
    previous: MetricsWindow
    content_age_score: int
    traffic_decline_score: int
    traffic_potential_score: int
    priority_score: int
    analysis_status: AnalysisStatus
    analysis_status_at: datetime | None
    draft_status: DraftStatus
    draft_status_at: datetime | None
    display_order: int
    excluded: bool
    last_metrics_at: datetime | None


@dataclass(slots=True)
class ItemResult:
    """Outcome of scoring one item; failures are reported, never raised."""

    item_id: int
    success: bool
    cache_hit: bool = False
    error: str | None = None
    metrics: ScoreWrite | None = None


@dataclass(slots=True)
class JobError:
    batch: int
    item_id: int | None
    message: str
    critical: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch": self.batch,
            "item_id": self.item_id,
            "message": self.message,
            "critical": self.critical,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> JobError:
        item_id = payload.get("item_id")
        return cls(
            batch=int(payload.get("batch") or 0),
            item_id=int(item_id) if item_id is not None else None,
            message=str(payload.get("message") or ""),
            critical=bool(payload.get("critical", False)),
        )


@dataclass(slots=True)
class JobView:
    """Progress snapshot of one prioritization job."""

    job_id: str
    status: JobStatus
    total_items: int
    processed_count: int
    current_batch: int
    total_batches: int
    batch_size: int
    success_count: int
    cache_hit_count: int
    errors: list[JobError]
    started_at: datetime
    last_update_at: datetime
    completed_at: datetime | None
    expires_at: datetime

    @property
    def percent_complete(self) -> float:
        if self.total_items <= 0:
            return 0.0
        return round(self.processed_count / self.total_items * 100, 1)


@dataclass(slots=True, frozen=True)
class IdleSnapshot:
    """Progress answer when no job record exists."""

    status: str = "idle"


IDLE = IdleSnapshot()


@dataclass(slots=True)
class JobStarted:
    job_id: str
    total_items: int
    total_batches: int


@dataclass(slots=True)
class BatchCounters:
    """Per-batch totals folded into the job record in one update."""

    processed: int = 0
    succeeded: int = 0
    cache_hits: int = 0
    errors: list[JobError] = field(default_factory=list)


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    model: str | None = None


@dataclass(slots=True)
class GenerationResult:
    """Text returned by a generation collaborator plus its usage."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(slots=True)
class AnalysisRecordView:
    item_id: int
    status: AnalysisStatus
    findings: dict[str, Any] | None
    issues_count: int
    error_message: str | None
    processing_seconds: float | None
    usage: TokenUsage
    estimated_cost_usd: float | None
    updated_at: datetime


@dataclass(slots=True)
class DraftRecordView:
    item_id: int
    status: DraftStatus
    artifact: dict[str, Any] | None
    error_message: str | None
    usage: TokenUsage
    estimated_cost_usd: float | None
    updated_at: datetime

    @property
    def has_artifact(self) -> bool:
        return self.artifact is not None


@dataclass(slots=True)
class ReconcileEntry:
    item_id: int
    kind: str
    action: str


@dataclass(slots=True)
class ReconcileReport:
    """Summary of one reconciliation pass."""

    reset: list[ReconcileEntry] = field(default_factory=list)
    interrupted: list[ReconcileEntry] = field(default_factory=list)
    untouched: list[ReconcileEntry] = field(default_factory=list)
    deleted_drafts: list[int] = field(default_factory=list)

    @property
    def repaired_count(self) -> int:
        return len(self.reset) + len(self.interrupted) + len(self.deleted_drafts)


@dataclass(slots=True)
class OrphanPruneResult:
    tracked_deleted: int = 0
    analyses_deleted: int = 0
    drafts_deleted: int = 0
