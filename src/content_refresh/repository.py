"""SQLModel-backed storage facade for content items, scores, and records."""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, text
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from content_refresh.models import (
    AnalysisRecordView,
    AnalysisStatus,
    ContentItemView,
    ContentItemWrite,
    DraftRecordView,
    DraftStatus,
    ItemStatus,
    MetricsWindow,
    OrphanPruneResult,
    ScoreWrite,
    TokenUsage,
    TrackedItemView,
)
from content_refresh.storage.alembic_runner import upgrade_head
from content_refresh.storage.common import (
    build_sqlite_engine,
    connect_sqlite_with_policy,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from content_refresh.storage.sqlmodel_models import (
    AnalysisRecord,
    ContentItem,
    DraftRecord,
    MetricsCacheEntry,
    TrackedItem,
)

logger = logging.getLogger(__name__)

_DISPLAY_ORDER_SQL = text(
    """
    WITH ranked AS (
        SELECT
            item_id,
            ROW_NUMBER() OVER (
                ORDER BY
                    CASE WHEN priority_score > 0 THEN 0 ELSE 1 END,
                    priority_score DESC,
                    item_id ASC
            ) - 1 AS new_order
        FROM tracked_items
        WHERE excluded = 0
    )
    UPDATE tracked_items
    SET display_order = (SELECT new_order FROM ranked WHERE ranked.item_id = tracked_items.item_id)
    WHERE item_id IN (SELECT item_id FROM ranked)
    """,
)


def metrics_cache_key(key: str, window_start: object, window_end: object) -> str:
    """Stable cache key for one metrics key and window."""

    raw = f"{key}|{window_start}|{window_end}"
    return "metrics_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


class ContentRepository:
    """Persistence facade for content items and their refresh state."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

        # Keep low-level connection for tests and ad-hoc debugging queries.
        self._connection: sqlite3.Connection = connect_sqlite_with_policy(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        self._connection.close()
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    # Content items

    def upsert_item(self, item: ContentItemWrite) -> ContentItemView:
        now = to_db_datetime(utc_now())
        values = {
            "item_id": item.item_id,
            "url": item.url,
            "title": item.title,
            "content": item.content,
            "excerpt": item.excerpt,
            "meta_title": item.meta_title,
            "meta_description": item.meta_description,
            "status": item.status.value,
            "published_at": to_db_datetime(item.published_at),
            "modified_at": (
                to_db_datetime(item.modified_at) if item.modified_at is not None else None
            ),
        }
        statement = sqlite_insert(ContentItem).values(created_at=now, updated_at=now, **values)
        statement = statement.on_conflict_do_update(
            index_elements=["item_id"],
            set_={**values, "updated_at": now},
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        stored = self.get_item(item.item_id)
        if stored is None:  # pragma: no cover - row was just written
            raise RuntimeError(f"Content item vanished after upsert: {item.item_id}")
        return stored

    def get_item(self, item_id: int) -> ContentItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ContentItem).where(ContentItem.item_id == item_id),
            ).one_or_none()
            return _to_item_view(row) if row is not None else None

    def update_item_content(self, item_id: int, fields: dict[str, Any]) -> bool:
        """Overwrite editable content fields of one item."""

        allowed = {"title", "content", "excerpt", "meta_title", "meta_description"}
        values = {key: value for key, value in fields.items() if key in allowed}
        if not values:
            return False
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ContentItem)
                .where(col(ContentItem.item_id) == item_id)
                .values(**values, modified_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def delete_item(self, item_id: int) -> OrphanPruneResult:
        """Remove an item and every record derived from it."""

        with Session(self.engine) as session:
            session.exec(sa_delete(ContentItem).where(col(ContentItem.item_id) == item_id))
            result = OrphanPruneResult(
                tracked_deleted=session.exec(
                    sa_delete(TrackedItem).where(col(TrackedItem.item_id) == item_id),
                ).rowcount,
                analyses_deleted=session.exec(
                    sa_delete(AnalysisRecord).where(col(AnalysisRecord.item_id) == item_id),
                ).rowcount,
                drafts_deleted=session.exec(
                    sa_delete(DraftRecord).where(col(DraftRecord.item_id) == item_id),
                ).rowcount,
            )
            session.commit()
        return result

    def count_published_items(self) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(ContentItem)
                .where(ContentItem.status == ItemStatus.PUBLISHED.value),
            ).one()

    def list_published_item_ids(self, *, offset: int, limit: int) -> list[int]:
        """Page published item ids, newest first, with a stable tiebreak."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ContentItem.item_id)
                .where(ContentItem.status == ItemStatus.PUBLISHED.value)
                .order_by(col(ContentItem.published_at).desc(), col(ContentItem.item_id).desc())
                .offset(offset)
                .limit(limit),
            ).all()
        return [int(item_id) for item_id in rows]

    # Metrics cache

    def get_cached_metrics(self, cache_key: str) -> MetricsWindow | None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(MetricsCacheEntry).where(
                    MetricsCacheEntry.cache_key == cache_key,
                    MetricsCacheEntry.expires_at > now,
                ),
            ).one_or_none()
            if row is None:
                return None
            payload = json.loads(row.payload_json)
        return MetricsWindow.from_dict(payload if isinstance(payload, dict) else {})

    def put_cached_metrics(
        self,
        cache_key: str,
        window: MetricsWindow,
        *,
        ttl_seconds: int,
    ) -> None:
        if ttl_seconds <= 0:
            return
        now = utc_now()
        values = {
            "payload_json": json.dumps(window.to_dict(), sort_keys=True),
            "expires_at": to_db_datetime(now + timedelta(seconds=ttl_seconds)),
            "created_at": to_db_datetime(now),
        }
        statement = sqlite_insert(MetricsCacheEntry).values(cache_key=cache_key, **values)
        statement = statement.on_conflict_do_update(index_elements=["cache_key"], set_=values)
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    def purge_expired_metrics(self) -> int:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(MetricsCacheEntry).where(col(MetricsCacheEntry.expires_at) <= now),
            )
            session.commit()
            return result.rowcount

    # Tracked items

    def save_scores(self, item_id: int, scores: ScoreWrite) -> None:
        """Write metrics and scores, leaving statuses and ordering untouched."""

        now = to_db_datetime(utc_now())
        self._upsert_tracked(
            item_id,
            {
                "clicks_current": scores.current.clicks,
                "impressions_current": scores.current.impressions,
                "ctr_current": scores.current.ctr,
                "position_current": scores.current.position,
                "clicks_previous": scores.previous.clicks,
                "impressions_previous": scores.previous.impressions,
                "ctr_previous": scores.previous.ctr,
                "position_previous": scores.previous.position,
                "content_age_score": scores.content_age_score,
                "traffic_decline_score": scores.traffic_decline_score,
                "traffic_potential_score": scores.traffic_potential_score,
                "priority_score": scores.priority_score,
                "last_metrics_at": now,
            },
        )

    def set_analysis_status(self, item_id: int, status: AnalysisStatus) -> None:
        now = to_db_datetime(utc_now())
        self._upsert_tracked(
            item_id,
            {"analysis_status": status.value, "analysis_status_at": now},
        )

    def set_draft_status(self, item_id: int, status: DraftStatus) -> None:
        now = to_db_datetime(utc_now())
        self._upsert_tracked(item_id, {"draft_status": status.value, "draft_status_at": now})

    def set_excluded(self, item_id: int, *, excluded: bool) -> None:
        self._upsert_tracked(item_id, {"excluded": excluded})

    def reset_tracked_analysis_status(
        self,
        item_id: int,
        *,
        expected: AnalysisStatus,
        new: AnalysisStatus,
    ) -> bool:
        """Move analysis status only if it still holds the expected value."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TrackedItem)
                .where(
                    col(TrackedItem.item_id) == item_id,
                    col(TrackedItem.analysis_status) == expected.value,
                )
                .values(analysis_status=new.value, analysis_status_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def reset_tracked_draft_status(
        self,
        item_id: int,
        *,
        expected: DraftStatus,
        new: DraftStatus,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TrackedItem)
                .where(
                    col(TrackedItem.item_id) == item_id,
                    col(TrackedItem.draft_status) == expected.value,
                )
                .values(draft_status=new.value, draft_status_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def get_tracked_item(self, item_id: int) -> TrackedItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TrackedItem).where(TrackedItem.item_id == item_id),
            ).one_or_none()
            return _to_tracked_view(row) if row is not None else None

    def list_tracked_items(
        self,
        *,
        analysis_status: AnalysisStatus | None = None,
        draft_status: DraftStatus | None = None,
        include_excluded: bool = True,
        limit: int | None = None,
    ) -> list[TrackedItemView]:
        """List tracked items in display order, optionally filtered by status."""

        statement = select(TrackedItem).order_by(
            col(TrackedItem.display_order).asc(),
            col(TrackedItem.priority_score).desc(),
            col(TrackedItem.item_id).asc(),
        )
        if analysis_status is not None:
            statement = statement.where(TrackedItem.analysis_status == analysis_status.value)
        if draft_status is not None:
            statement = statement.where(TrackedItem.draft_status == draft_status.value)
        if not include_excluded:
            statement = statement.where(col(TrackedItem.excluded).is_(False))
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
            return [_to_tracked_view(row) for row in rows]

    def apply_display_order(self) -> int:
        """Rank all non-excluded items in one statement; returns rows updated."""

        with Session(self.engine) as session:
            result = session.exec(_DISPLAY_ORDER_SQL)  # type: ignore[call-overload]
            session.commit()
            return int(result.rowcount or 0)

    # Analysis records

    def start_analysis(self, item_id: int) -> None:
        now = to_db_datetime(utc_now())
        values = {
            "status": AnalysisStatus.ANALYZING.value,
            "error_message": None,
            "updated_at": now,
        }
        statement = sqlite_insert(AnalysisRecord).values(
            item_id=item_id,
            issues_count=0,
            created_at=now,
            **values,
        )
        statement = statement.on_conflict_do_update(index_elements=["item_id"], set_=values)
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    def save_analysis(  # noqa: PLR0913
        self,
        item_id: int,
        *,
        findings: dict[str, Any],
        issues_count: int,
        processing_seconds: float,
        usage: TokenUsage,
        estimated_cost_usd: float | None,
    ) -> None:
        now = to_db_datetime(utc_now())
        values = {
            "status": AnalysisStatus.COMPLETED.value,
            "findings_json": json.dumps(findings, ensure_ascii=False, sort_keys=True),
            "issues_count": issues_count,
            "error_message": None,
            "processing_seconds": processing_seconds,
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
            "model": usage.model,
            "estimated_cost_usd": estimated_cost_usd,
            "updated_at": now,
        }
        statement = sqlite_insert(AnalysisRecord).values(item_id=item_id, created_at=now, **values)
        statement = statement.on_conflict_do_update(index_elements=["item_id"], set_=values)
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        self.set_analysis_status(item_id, AnalysisStatus.COMPLETED)

    def save_analysis_error(
        self,
        item_id: int,
        *,
        message: str,
        processing_seconds: float | None = None,
    ) -> None:
        now = to_db_datetime(utc_now())
        values = {
            "status": AnalysisStatus.ERROR.value,
            "error_message": message,
            "processing_seconds": processing_seconds,
            "updated_at": now,
        }
        statement = sqlite_insert(AnalysisRecord).values(
            item_id=item_id,
            issues_count=0,
            created_at=now,
            **values,
        )
        statement = statement.on_conflict_do_update(index_elements=["item_id"], set_=values)
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        self.set_analysis_status(item_id, AnalysisStatus.ERROR)

    def get_analysis(self, item_id: int) -> AnalysisRecordView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AnalysisRecord).where(AnalysisRecord.item_id == item_id),
            ).one_or_none()
            return _to_analysis_view(row) if row is not None else None

    def list_analysis_records(self, *, status: AnalysisStatus) -> list[AnalysisRecordView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisRecord)
                .where(AnalysisRecord.status == status.value)
                .order_by(col(AnalysisRecord.item_id).asc()),
            ).all()
            return [_to_analysis_view(row) for row in rows]

    def reset_analysis_record_status(
        self,
        item_id: int,
        *,
        expected: AnalysisStatus,
        new: AnalysisStatus,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisRecord)
                .where(
                    col(AnalysisRecord.item_id) == item_id,
                    col(AnalysisRecord.status) == expected.value,
                )
                .values(status=new.value, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    # Draft records

    def start_draft(self, item_id: int) -> None:
        now = to_db_datetime(utc_now())
        values = {
            "status": DraftStatus.CREATING.value,
            "artifact_json": None,
            "error_message": None,
            "updated_at": now,
        }
        statement = sqlite_insert(DraftRecord).values(item_id=item_id, created_at=now, **values)
        statement = statement.on_conflict_do_update(index_elements=["item_id"], set_=values)
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    def save_draft(
        self,
        item_id: int,
        *,
        artifact: dict[str, Any],
        usage: TokenUsage,
        estimated_cost_usd: float | None,
    ) -> None:
        now = to_db_datetime(utc_now())
        values = {
            "status": DraftStatus.COMPLETED.value,
            "artifact_json": json.dumps(artifact, ensure_ascii=False, sort_keys=True),
            "error_message": None,
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
            "model": usage.model,
            "estimated_cost_usd": estimated_cost_usd,
            "updated_at": now,
        }
        statement = sqlite_insert(DraftRecord).values(item_id=item_id, created_at=now, **values)
        statement = statement.on_conflict_do_update(index_elements=["item_id"], set_=values)
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        self.set_draft_status(item_id, DraftStatus.COMPLETED)

    def save_draft_error(self, item_id: int, *, message: str) -> None:
        now = to_db_datetime(utc_now())
        values = {
            "status": DraftStatus.ERROR.value,
            "error_message": message,
            "updated_at": now,
        }
        statement = sqlite_insert(DraftRecord).values(item_id=item_id, created_at=now, **values)
        statement = statement.on_conflict_do_update(index_elements=["item_id"], set_=values)
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        self.set_draft_status(item_id, DraftStatus.ERROR)

    def get_draft(self, item_id: int) -> DraftRecordView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(DraftRecord).where(DraftRecord.item_id == item_id),
            ).one_or_none()
            return _to_draft_view(row) if row is not None else None

    def list_draft_records(self, *, status: DraftStatus) -> list[DraftRecordView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DraftRecord)
                .where(DraftRecord.status == status.value)
                .order_by(col(DraftRecord.item_id).asc()),
            ).all()
            return [_to_draft_view(row) for row in rows]

    def reset_draft_record_status(
        self,
        item_id: int,
        *,
        expected: DraftStatus,
        new: DraftStatus,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(DraftRecord)
                .where(
                    col(DraftRecord.item_id) == item_id,
                    col(DraftRecord.status) == expected.value,
                )
                .values(status=new.value, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def delete_draft_if_status(self, item_id: int, *, status: DraftStatus) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(DraftRecord).where(
                    col(DraftRecord.item_id) == item_id,
                    col(DraftRecord.status) == status.value,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def reset_item_workflow(self, item_id: int) -> None:
        """Drop analysis and draft records and return both statuses to pending.

        Metrics, scores, and display order are preserved.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(sa_delete(DraftRecord).where(col(DraftRecord.item_id) == item_id))
            session.exec(sa_delete(AnalysisRecord).where(col(AnalysisRecord.item_id) == item_id))
            session.exec(
                sa_update(TrackedItem)
                .where(col(TrackedItem.item_id) == item_id)
                .values(
                    analysis_status=AnalysisStatus.PENDING.value,
                    analysis_status_at=now,
                    draft_status=DraftStatus.PENDING.value,
                    draft_status_at=now,
                    updated_at=now,
                ),
            )
            session.commit()

    def prune_orphans(self) -> OrphanPruneResult:
        """Delete derived records whose content item no longer exists."""

        existing = select(ContentItem.item_id)
        with Session(self.engine) as session:
            result = OrphanPruneResult(
                tracked_deleted=session.exec(
                    sa_delete(TrackedItem).where(col(TrackedItem.item_id).not_in(existing)),
                ).rowcount,
                analyses_deleted=session.exec(
                    sa_delete(AnalysisRecord).where(col(AnalysisRecord.item_id).not_in(existing)),
                ).rowcount,
                drafts_deleted=session.exec(
                    sa_delete(DraftRecord).where(col(DraftRecord.item_id).not_in(existing)),
                ).rowcount,
            )
            session.commit()
        if result.tracked_deleted or result.analyses_deleted or result.drafts_deleted:
            logger.info(
                "Pruned orphan records (tracked=%s analyses=%s drafts=%s).",
                result.tracked_deleted,
                result.analyses_deleted,
                result.drafts_deleted,
            )
        return result

    def _upsert_tracked(self, item_id: int, owned: dict[str, Any]) -> None:
        now = to_db_datetime(utc_now())
        insert_values = {**_tracked_defaults(now), **owned, "item_id": item_id}
        statement = sqlite_insert(TrackedItem).values(**insert_values)
        statement = statement.on_conflict_do_update(
            index_elements=["item_id"],
            set_={**owned, "updated_at": now},
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()


def _tracked_defaults(now: datetime) -> dict[str, Any]:
    return {
        "clicks_current": 0,
        "impressions_current": 0,
        "ctr_current": 0.0,
        "position_current": 0.0,
        "clicks_previous": 0,
        "impressions_previous": 0,
        "ctr_previous": 0.0,
        "position_previous": 0.0,
        "content_age_score": 0,
        "traffic_decline_score": 0,
        "traffic_potential_score": 0,
        "priority_score": 0,
        "analysis_status": AnalysisStatus.PENDING.value,
        "draft_status": DraftStatus.PENDING.value,
        "display_order": 0,
        "excluded": False,
        "created_at": now,
        "updated_at": now,
    }


def _to_item_view(row: ContentItem) -> ContentItemView:
    return ContentItemView(
        item_id=row.item_id,
        url=row.url,
        title=row.title,
        content=row.content,
        excerpt=row.excerpt,
        meta_title=row.meta_title,
        meta_description=row.meta_description,
        status=ItemStatus(row.status),
        published_at=to_utc_aware_datetime(row.published_at),
        modified_at=optional_utc(row.modified_at),
    )


def _to_tracked_view(row: TrackedItem) -> TrackedItemView:
    return TrackedItemView(
        item_id=row.item_id,
        current=MetricsWindow(
            clicks=row.clicks_current,
            impressions=row.impressions_current,
            ctr=row.ctr_current,
            position=row.position_current,
        ),
        previous=MetricsWindow(
            clicks=row.clicks_previous,
            impressions=row.impressions_previous,
            ctr=row.ctr_previous,
            position=row.position_previous,
        ),
        content_age_score=row.content_age_score,
        traffic_decline_score=row.traffic_decline_score,
        traffic_potential_score=row.traffic_potential_score,
        priority_score=row.priority_score,
        analysis_status=AnalysisStatus(row.analysis_status),
        analysis_status_at=optional_utc(row.analysis_status_at),
        draft_status=DraftStatus(row.draft_status),
        draft_status_at=optional_utc(row.draft_status_at),
        display_order=row.display_order,
        excluded=bool(row.excluded),
        last_metrics_at=optional_utc(row.last_metrics_at),
    )


def _to_usage(row: AnalysisRecord | DraftRecord) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=row.prompt_tokens,
        completion_tokens=row.completion_tokens,
        total_tokens=row.total_tokens,
        model=row.model,
    )


def _to_analysis_view(row: AnalysisRecord) -> AnalysisRecordView:
    findings = json.loads(row.findings_json) if row.findings_json else None
    return AnalysisRecordView(
        item_id=row.item_id,
        status=AnalysisStatus(row.status),
        findings=findings if isinstance(findings, dict) else None,
        issues_count=row.issues_count,
        error_message=row.error_message,
        processing_seconds=row.processing_seconds,
        usage=_to_usage(row),
        estimated_cost_usd=row.estimated_cost_usd,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_draft_view(row: DraftRecord) -> DraftRecordView:
    artifact = json.loads(row.artifact_json) if row.artifact_json else None
    return DraftRecordView(
        item_id=row.item_id,
        status=DraftStatus(row.status),
        artifact=artifact if isinstance(artifact, dict) else None,
        error_message=row.error_message,
        usage=_to_usage(row),
        estimated_cost_usd=row.estimated_cost_usd,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
