"""Persistent queue repository for background tasks."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from content_refresh.queue.models import TaskStatus, TaskView
from content_refresh.storage.alembic_runner import upgrade_head
from content_refresh.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from content_refresh.storage.sqlmodel_models import QueuedTask

logger = logging.getLogger(__name__)


class TaskQueueRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def enqueue(  # noqa: PLR0913
        self,
        task_name: str,
        payload: dict[str, Any],
        *,
        group: str,
        dedup_key: str | None = None,
        max_attempts: int = 3,
        run_after: datetime | None = None,
    ) -> TaskView:
        """Create a queued task.

        A task whose `dedup_key` already exists is not enqueued twice; the
        existing task is returned instead, whatever its status.
        """

        now = utc_now()
        task_id = str(uuid4())
        with Session(self.engine) as session:
            row = QueuedTask(
                task_id=task_id,
                task_name=task_name,
                group_name=group,
                payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True),
                dedup_key=dedup_key,
                status=TaskStatus.QUEUED.value,
                attempt=0,
                max_attempts=max_attempts,
                run_after=to_db_datetime(run_after or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if dedup_key is None:
                    raise
                existing = session.exec(
                    select(QueuedTask).where(QueuedTask.dedup_key == dedup_key),
                ).one_or_none()
                if existing is None:
                    raise
                logger.debug(
                    "Task already enqueued (dedup_key=%s task_id=%s status=%s).",
                    dedup_key,
                    existing.task_id,
                    existing.status,
                )
                return _to_task_view(existing)
            session.refresh(row)
            return _to_task_view(row)

    def claim_next_ready_task(self, *, worker_id: str) -> TaskView | None:
        """Atomically claim one task ready for execution."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueuedTask)
                    .where(
                        QueuedTask.status == TaskStatus.QUEUED.value,
                        QueuedTask.run_after <= to_db_datetime(now),
                    )
                    .order_by(
                        col(QueuedTask.run_after).asc(),
                        col(QueuedTask.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueuedTask)
                    .where(
                        col(QueuedTask.task_id) == candidate.task_id,
                        col(QueuedTask.status) == TaskStatus.QUEUED.value,
                    )
                    .values(
                        status=TaskStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        finished_at=None,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

                claimed = session.exec(
                    select(QueuedTask).where(QueuedTask.task_id == candidate.task_id),
                ).one()
                return _to_task_view(claimed)

    def touch_task(self, *, task_id: str) -> None:
        """Update heartbeat for a running task."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == task_id,
                    col(QueuedTask.status) == TaskStatus.RUNNING.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()

    def complete_task(self, *, task_id: str) -> bool:
        """Mark a running task as succeeded."""

        return self._finish_running(task_id=task_id, status=TaskStatus.SUCCEEDED, error=None)

    def fail_task(self, *, task_id: str, error_summary: str) -> bool:
        """Mark a running task as failed for good."""

        return self._finish_running(
            task_id=task_id,
            status=TaskStatus.FAILED,
            error=error_summary,
        )

    def schedule_retry(self, *, task_id: str, run_after: datetime, error_summary: str) -> bool:
        """Requeue a running task for automatic retry."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == task_id,
                    col(QueuedTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.QUEUED.value,
                    run_after=to_db_datetime(run_after),
                    error_summary=error_summary,
                    started_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def cancel_group(self, *, group: str) -> int:
        """Cancel every not-yet-claimed task of a group; returns how many."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.group_name) == group,
                    col(QueuedTask.status) == TaskStatus.QUEUED.value,
                )
                .values(
                    status=TaskStatus.CANCELED.value,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def recover_stale_running_tasks(self, *, stale_after: timedelta) -> int:
        """Requeue or fail running tasks whose worker stopped heartbeating."""

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        recovered = 0
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(QueuedTask).where(
                    QueuedTask.status == TaskStatus.RUNNING.value,
                    func.coalesce(QueuedTask.heartbeat_at, QueuedTask.started_at) < cutoff,
                ),
            ).all()
            for row in stale_rows:
                retries_left = row.attempt < row.max_attempts
                next_status = TaskStatus.QUEUED if retries_left else TaskStatus.FAILED
                result = session.exec(
                    sa_update(QueuedTask)
                    .where(
                        col(QueuedTask.task_id) == row.task_id,
                        col(QueuedTask.status) == TaskStatus.RUNNING.value,
                    )
                    .values(
                        status=next_status.value,
                        run_after=to_db_datetime(now),
                        started_at=None,
                        heartbeat_at=None,
                        finished_at=None if retries_left else to_db_datetime(now),
                        worker_id=None,
                        error_summary="Recovered stale running task after worker interruption.",
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount == 1:
                    recovered += 1
                    logger.warning(
                        "Recovered stale running task (task_id=%s name=%s next_status=%s).",
                        row.task_id,
                        row.task_name,
                        next_status.value,
                    )
            session.commit()
        return recovered

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueuedTask).where(QueuedTask.task_id == task_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        group: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by group and status."""

        statement = select(QueuedTask).order_by(col(QueuedTask.created_at).desc()).limit(limit)
        if group is not None:
            statement = statement.where(QueuedTask.group_name == group)
        if status is not None:
            statement = statement.where(QueuedTask.status == status.value)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def count_tasks(self, *, group: str, status: TaskStatus) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(QueuedTask)
                .where(
                    QueuedTask.group_name == group,
                    QueuedTask.status == status.value,
                ),
            ).one()

    def _finish_running(self, *, task_id: str, status: TaskStatus, error: str | None) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == task_id,
                    col(QueuedTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    error_summary=error,
                    finished_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _to_task_view(row: QueuedTask) -> TaskView:
    payload = json.loads(row.payload_json) if row.payload_json else {}
    return TaskView(
        task_id=row.task_id,
        task_name=row.task_name,
        group_name=row.group_name,
        payload=payload if isinstance(payload, dict) else {},
        dedup_key=row.dedup_key,
        status=TaskStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware_datetime(row.run_after),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
        worker_id=row.worker_id,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
