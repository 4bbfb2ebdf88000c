"""Initial content refresh schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "content_items",
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False, server_default=""),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("excerpt", sa.Text(), nullable=False, server_default=""),
        sa.Column("meta_title", sa.String(), nullable=True),
        sa.Column("meta_description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="published"),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_content_items_url", "content_items", ["url"], unique=True)
    op.create_index("ix_content_items_status", "content_items", ["status"])

    op.create_table(
        "tracked_items",
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("clicks_current", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("impressions_current", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ctr_current", sa.Float(), nullable=False, server_default="0"),
        sa.Column("position_current", sa.Float(), nullable=False, server_default="0"),
        sa.Column("clicks_previous", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("impressions_previous", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ctr_previous", sa.Float(), nullable=False, server_default="0"),
        sa.Column("position_previous", sa.Float(), nullable=False, server_default="0"),
        sa.Column("content_age_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("traffic_decline_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("traffic_potential_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("priority_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("analysis_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("analysis_status_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("draft_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("draft_status_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("excluded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_metrics_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_tracked_items_priority_score", "tracked_items", ["priority_score"])
    op.create_index("ix_tracked_items_analysis_status", "tracked_items", ["analysis_status"])
    op.create_index("ix_tracked_items_draft_status", "tracked_items", ["draft_status"])
    op.create_index("ix_tracked_items_display_order", "tracked_items", ["display_order"])
    op.create_index(
        "idx_tracked_items_priority",
        "tracked_items",
        ["priority_score", "item_id"],
    )

    op.create_table(
        "analysis_records",
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("findings_json", sa.Text(), nullable=True),
        sa.Column("issues_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processing_seconds", sa.Float(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("completion_tokens", sa.Integer(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_analysis_records_status", "analysis_records", ["status"])

    op.create_table(
        "draft_records",
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("artifact_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("completion_tokens", sa.Integer(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_draft_records_status", "draft_records", ["status"])

    op.create_table(
        "prioritization_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_batch", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_batches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("batch_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cache_hit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_update_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_prioritization_jobs_status", "prioritization_jobs", ["status"])
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_prioritization_jobs_running
            ON prioritization_jobs (status)
            WHERE status = 'running'
            """,
        ),
    )

    op.create_table(
        "leases",
        sa.Column("lease_key", sa.String(), nullable=False),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("ttl_seconds", sa.Integer(), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lease_key"),
    )

    op.create_table(
        "metrics_cache",
        sa.Column("cache_key", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("cache_key"),
    )

    op.create_table(
        "queued_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_name", sa.String(), nullable=False),
        sa.Column("group_name", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("dedup_key", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_queued_tasks_task_name", "queued_tasks", ["task_name"])
    op.create_index("ix_queued_tasks_group_name", "queued_tasks", ["group_name"])
    op.create_index("ix_queued_tasks_dedup_key", "queued_tasks", ["dedup_key"], unique=True)
    op.create_index("ix_queued_tasks_status", "queued_tasks", ["status"])
    op.create_index("ix_queued_tasks_worker_id", "queued_tasks", ["worker_id"])
    op.create_index(
        "idx_queued_tasks_ready",
        "queued_tasks",
        ["status", "run_after", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("queued_tasks")
    op.drop_table("metrics_cache")
    op.drop_table("leases")
    op.execute(sa.text("DROP INDEX IF EXISTS uq_prioritization_jobs_running"))
    op.drop_table("prioritization_jobs")
    op.drop_table("draft_records")
    op.drop_table("analysis_records")
    op.drop_table("tracked_items")
    op.drop_table("content_items")
