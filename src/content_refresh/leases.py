"""TTL leases keyed by resource name, stored as single SQLite rows.

A lease is created with a plain INSERT against the primary key, so at most one
live row can exist per key. A holder that crashes leaves its row behind; the
next acquirer that finds the row older than its TTL deletes it and retries.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from content_refresh.errors import LeaseUnavailableError
from content_refresh.storage.alembic_runner import upgrade_head
from content_refresh.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from content_refresh.storage.sqlmodel_models import Lease

logger = logging.getLogger(__name__)


def analysis_lease_key(item_id: int) -> str:
    return f"analyze:{item_id}"


def draft_lease_key(item_id: int) -> str:
    return f"draft:{item_id}"


@dataclass(slots=True)
class LeaseView:
    key: str
    owner: str
    ttl_seconds: int
    issued_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now - self.issued_at > timedelta(seconds=self.ttl_seconds)


class LeaseManager:
    """Acquire, inspect, and release keyed leases."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        owner: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db_path = db_path
        self.owner = owner or f"{os.getpid()}-{uuid4().hex[:8]}"
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._clock = clock
        self._sleep = sleep

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def acquire(
        self,
        key: str,
        *,
        ttl_seconds: int,
        max_attempts: int = 1,
        backoff_seconds: float = 0.0,
    ) -> bool:
        """Try to take the lease for `key`.

        Returns False once `max_attempts` attempts found a live holder. Clearing
        an expired holder does not consume an attempt.
        """

        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        attempt = 0
        while attempt < max_attempts:
            if self._try_insert(key=key, ttl_seconds=ttl_seconds):
                return True

            holder = self.get(key)
            if holder is None:
                # Released between our insert and read.
                continue
            if holder.is_expired(to_utc_aware_datetime(self._clock())):
                if self._delete_if_issued_at(key=key, issued_at=holder.issued_at):
                    logger.warning(
                        "Reclaimed stale lease (key=%s owner=%s issued_at=%s ttl=%ss).",
                        key,
                        holder.owner,
                        holder.issued_at.isoformat(),
                        holder.ttl_seconds,
                    )
                continue

            attempt += 1
            if attempt < max_attempts and backoff_seconds > 0:
                self._sleep(backoff_seconds)
        return False

    def release(self, key: str) -> None:
        """Delete the lease; a missing lease is not an error."""

        with Session(self.engine) as session:
            session.exec(sa_delete(Lease).where(col(Lease.lease_key) == key))
            session.commit()

    def get(self, key: str) -> LeaseView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Lease).where(Lease.lease_key == key)).one_or_none()
            if row is None:
                return None
            return LeaseView(
                key=row.lease_key,
                owner=row.owner,
                ttl_seconds=row.ttl_seconds,
                issued_at=to_utc_aware_datetime(row.issued_at),
            )

    def is_held(self, key: str) -> bool:
        """Return True when a lease row exists and is still within its TTL."""

        holder = self.get(key)
        if holder is None:
            return False
        return not holder.is_expired(to_utc_aware_datetime(self._clock()))

    @contextmanager
    def held(
        self,
        key: str,
        *,
        ttl_seconds: int,
        max_attempts: int = 1,
        backoff_seconds: float = 0.0,
        busy_message: str | None = None,
    ) -> Iterator[None]:
        """Hold the lease for the duration of the block, releasing on every exit."""

        acquired = self.acquire(
            key,
            ttl_seconds=ttl_seconds,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
        )
        if not acquired:
            raise LeaseUnavailableError(key, busy_message)
        try:
            yield
        finally:
            self.release(key)

    def _try_insert(self, *, key: str, ttl_seconds: int) -> bool:
        with Session(self.engine) as session:
            session.add(
                Lease(
                    lease_key=key,
                    owner=self.owner,
                    ttl_seconds=ttl_seconds,
                    issued_at=to_db_datetime(self._clock()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def _delete_if_issued_at(self, *, key: str, issued_at: datetime) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(Lease).where(
                    col(Lease.lease_key) == key,
                    col(Lease.issued_at) == to_db_datetime(issued_at),
                ),
            )
            session.commit()
            return result.rowcount == 1
