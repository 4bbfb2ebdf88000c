"""Persistence for prioritization job records."""

from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from content_refresh.errors import JobAlreadyRunningError
from content_refresh.models import BatchCounters, JobError, JobStatus, JobView
from content_refresh.storage.alembic_runner import upgrade_head
from content_refresh.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from content_refresh.storage.sqlmodel_models import PrioritizationJob

logger = logging.getLogger(__name__)


def new_job_id(now: datetime) -> str:
    return f"pr_{int(now.timestamp())}_{secrets.token_hex(4)}"


class JobRepository:
    """Job records with compare-and-set status transitions.

    At most one job can be `running` at a time. Rows past `expires_at` read as
    absent and are purged lazily.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        ttl_seconds: int = 3_600,
    ) -> None:
        self.db_path = db_path
        self.ttl = timedelta(seconds=ttl_seconds)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create(self, *, total_items: int, total_batches: int, batch_size: int) -> JobView:
        """Insert a new running job or raise if one is already running."""

        now = utc_now()
        with Session(self.engine) as session:
            active = self._running_row(session)
            if active is not None:
                raise JobAlreadyRunningError(active.job_id)

            row = PrioritizationJob(
                job_id=new_job_id(now),
                status=JobStatus.RUNNING.value,
                total_items=total_items,
                total_batches=total_batches,
                batch_size=batch_size,
                errors_json="[]",
                started_at=to_db_datetime(now),
                last_update_at=to_db_datetime(now),
                expires_at=to_db_datetime(now + self.ttl),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                active = self._running_row(session)
                if active is None:
                    raise
                raise JobAlreadyRunningError(active.job_id) from None
            session.refresh(row)
            return _to_job_view(row)

    def get(self, job_id: str) -> JobView | None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(PrioritizationJob).where(
                    PrioritizationJob.job_id == job_id,
                    PrioritizationJob.expires_at > now,
                ),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def current(self) -> JobView | None:
        """Return the running job, else the most recently started live job."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            running = self._running_row(session)
            if running is not None and running.expires_at > now:
                return _to_job_view(running)
            row = session.exec(
                select(PrioritizationJob)
                .where(PrioritizationJob.expires_at > now)
                .order_by(col(PrioritizationJob.started_at).desc())
                .limit(1),
            ).first()
            return _to_job_view(row) if row is not None else None

    def running(self) -> JobView | None:
        """Return the running job regardless of expiry."""

        with Session(self.engine) as session:
            row = self._running_row(session)
            return _to_job_view(row) if row is not None else None

    def purge_expired(self) -> int:
        """Delete finished jobs past their TTL; running rows are left to the sweep."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(PrioritizationJob).where(
                    col(PrioritizationJob.expires_at) <= now,
                    col(PrioritizationJob.status) != JobStatus.RUNNING.value,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def apply_batch(
        self,
        job_id: str,
        *,
        expected_batch: int,
        batch_number: int,
        counters: BatchCounters,
    ) -> bool:
        """Fold one batch's counters into the job in a single compare-and-set.

        Loses (returns False) when the job is no longer running or another
        invocation already advanced `current_batch`.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(PrioritizationJob).where(PrioritizationJob.job_id == job_id),
            ).one_or_none()
            if row is None:
                return False
            errors = _load_errors(row.errors_json)
            errors.extend(error.to_dict() for error in counters.errors)
            result = session.exec(
                sa_update(PrioritizationJob)
                .where(
                    col(PrioritizationJob.job_id) == job_id,
                    col(PrioritizationJob.status) == JobStatus.RUNNING.value,
                    col(PrioritizationJob.current_batch) == expected_batch,
                )
                .values(
                    current_batch=batch_number,
                    processed_count=min(
                        row.total_items,
                        row.processed_count + counters.processed,
                    ),
                    success_count=row.success_count + counters.succeeded,
                    cache_hit_count=row.cache_hit_count + counters.cache_hits,
                    errors_json=json.dumps(errors, ensure_ascii=False),
                    last_update_at=to_db_datetime(now),
                    expires_at=to_db_datetime(now + self.ttl),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def transition(
        self,
        job_id: str,
        *,
        to_status: JobStatus,
        error: JobError | None = None,
    ) -> bool:
        """Move a running job to a terminal status; no-op for any other state."""

        if to_status == JobStatus.RUNNING:
            raise ValueError("Cannot transition a job back to running.")

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(PrioritizationJob).where(PrioritizationJob.job_id == job_id),
            ).one_or_none()
            if row is None:
                return False
            values: dict[str, object] = {
                "status": to_status.value,
                "completed_at": to_db_datetime(now),
                "last_update_at": to_db_datetime(now),
                "expires_at": to_db_datetime(now + self.ttl),
            }
            if error is not None:
                errors = _load_errors(row.errors_json)
                errors.append(error.to_dict())
                values["errors_json"] = json.dumps(errors, ensure_ascii=False)
            result = session.exec(
                sa_update(PrioritizationJob)
                .where(
                    col(PrioritizationJob.job_id) == job_id,
                    col(PrioritizationJob.status) == JobStatus.RUNNING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def find_stale_running(self, *, stale_after: timedelta) -> JobView | None:
        """Return the running job if it started longer than `stale_after` ago."""

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            row = session.exec(
                select(PrioritizationJob).where(
                    PrioritizationJob.status == JobStatus.RUNNING.value,
                    PrioritizationJob.started_at < cutoff,
                ),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def _running_row(self, session: Session) -> PrioritizationJob | None:
        return session.exec(
            select(PrioritizationJob).where(
                PrioritizationJob.status == JobStatus.RUNNING.value,
            ),
        ).one_or_none()


def _load_errors(raw: str | None) -> list[dict[str, object]]:
    if not raw:
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return []
    return [entry for entry in parsed if isinstance(entry, dict)]


def _to_job_view(row: PrioritizationJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        status=JobStatus(row.status),
        total_items=row.total_items,
        processed_count=row.processed_count,
        current_batch=row.current_batch,
        total_batches=row.total_batches,
        batch_size=row.batch_size,
        success_count=row.success_count,
        cache_hit_count=row.cache_hit_count,
        errors=[JobError.from_dict(entry) for entry in _load_errors(row.errors_json)],
        started_at=to_utc_aware_datetime(row.started_at),
        last_update_at=to_utc_aware_datetime(row.last_update_at),
        completed_at=optional_utc(row.completed_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
    )
