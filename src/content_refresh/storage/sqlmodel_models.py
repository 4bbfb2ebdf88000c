"""SQLModel ORM tables for content refresh storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel


class ContentItem(SQLModel, table=True):
    __tablename__ = "content_items"  # type: ignore[bad-override]

    item_id: int = Field(primary_key=True)
    url: str = Field(index=True, unique=True)
    title: str = ""
    content: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    excerpt: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    meta_title: str | None = None
    meta_description: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(default="published", index=True)
    published_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    modified_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TrackedItem(SQLModel, table=True):
    __tablename__ = "tracked_items"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tracked_items_priority", "priority_score", "item_id"),)

    item_id: int = Field(primary_key=True)
    clicks_current: int = 0
    impressions_current: int = 0
    ctr_current: float = 0.0
    position_current: float = 0.0
    clicks_previous: int = 0
    impressions_previous: int = 0
    ctr_previous: float = 0.0
    position_previous: float = 0.0
    content_age_score: int = 0
    traffic_decline_score: int = 0
    traffic_potential_score: int = 0
    priority_score: int = Field(default=0, index=True)
    analysis_status: str = Field(default="pending", index=True)
    analysis_status_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    draft_status: str = Field(default="pending", index=True)
    draft_status_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    display_order: int = Field(default=0, index=True)
    excluded: bool = Field(default=False)
    last_metrics_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisRecord(SQLModel, table=True):
    __tablename__ = "analysis_records"  # type: ignore[bad-override]

    item_id: int = Field(primary_key=True)
    status: str = Field(index=True)
    findings_json: str | None = Field(default=None, sa_column=Column(Text))
    issues_count: int = 0
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    processing_seconds: float | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    model: str | None = None
    estimated_cost_usd: float | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DraftRecord(SQLModel, table=True):
    __tablename__ = "draft_records"  # type: ignore[bad-override]

    item_id: int = Field(primary_key=True)
    status: str = Field(index=True)
    artifact_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    model: str | None = None
    estimated_cost_usd: float | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PrioritizationJob(SQLModel, table=True):
    __tablename__ = "prioritization_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_prioritization_jobs_running",
            "status",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
    )

    job_id: str = Field(primary_key=True)
    status: str = Field(index=True)
    total_items: int = 0
    processed_count: int = 0
    current_batch: int = 0
    total_batches: int = 0
    batch_size: int = 0
    success_count: int = 0
    cache_hit_count: int = 0
    errors_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_update_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Lease(SQLModel, table=True):
    __tablename__ = "leases"  # type: ignore[bad-override]

    lease_key: str = Field(primary_key=True)
    owner: str
    ttl_seconds: int
    issued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MetricsCacheEntry(SQLModel, table=True):
    __tablename__ = "metrics_cache"  # type: ignore[bad-override]

    cache_key: str = Field(primary_key=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueuedTask(SQLModel, table=True):
    __tablename__ = "queued_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queued_tasks_ready", "status", "run_after", "created_at"),)

    task_id: str = Field(primary_key=True)
    task_name: str = Field(index=True)
    group_name: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    dedup_key: str | None = Field(default=None, unique=True)
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    worker_id: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
