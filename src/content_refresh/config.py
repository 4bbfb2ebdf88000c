"""Runtime configuration for prioritization, leases, and pipelines."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

AGE_DATE_SOURCES = ("published", "modified")


@dataclass(slots=True)
class PrioritizationSettings:
    """Batch job settings."""

    batch_size: int = 100
    job_ttl_seconds: int = 3_600
    job_stale_after_seconds: int = 3_600
    age_date_source: str = "published"
    group_name: str = "content_refresh_prioritization"


@dataclass(slots=True)
class MetricsSettings:
    """Metrics windows and cache policy."""

    current_window_days: int = 90
    previous_window_offset_days: int = 91
    previous_window_days: int = 90
    cache_ttl_seconds: int = 86_400
    empty_cache_ttl_seconds: int = 3_600
    metrics_file: Path | None = None


@dataclass(slots=True)
class LeaseSettings:
    """Per-item exclusive operation leases."""

    draft_ttl_seconds: int = 1_200
    draft_max_attempts: int = 3
    draft_backoff_seconds: float = 0.5
    analysis_ttl_seconds: int = 900
    analysis_max_attempts: int = 1
    analysis_backoff_seconds: float = 0.0


@dataclass(slots=True)
class ReconcileSettings:
    """Stale status reconciliation settings."""

    grace_seconds: int = 120
    run_on_progress: bool = True


@dataclass(slots=True)
class WorkerSettings:
    """Durable queue worker settings."""

    worker_id: str = "worker-local"
    poll_interval_seconds: float = 2.0
    retry_base_seconds: int = 30
    retry_max_seconds: int = 900
    max_attempts: int = 3
    stale_task_seconds: int = 1_800


@dataclass(slots=True)
class GenerationSettings:
    """Text generation collaborator settings."""

    command_template: str = ""
    agent: str = "echo"
    model: str = "echo"
    timeout_seconds: int = 600


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".content_refresh.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    prioritization: PrioritizationSettings = field(default_factory=PrioritizationSettings)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)
    leases: LeaseSettings = field(default_factory=LeaseSettings)
    reconcile: ReconcileSettings = field(default_factory=ReconcileSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        metrics_file = os.getenv("CONTENT_REFRESH_METRICS_FILE", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("CONTENT_REFRESH_DB_PATH", ".content_refresh.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("CONTENT_REFRESH_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            log_level=os.getenv("CONTENT_REFRESH_LOG_LEVEL", "WARNING").strip().upper(),
            prioritization=PrioritizationSettings(
                batch_size=int(os.getenv("CONTENT_REFRESH_BATCH_SIZE", "100")),
                job_ttl_seconds=int(os.getenv("CONTENT_REFRESH_JOB_TTL_SECONDS", "3600")),
                job_stale_after_seconds=int(
                    os.getenv("CONTENT_REFRESH_JOB_STALE_AFTER_SECONDS", "3600"),
                ),
                age_date_source=os.getenv("CONTENT_REFRESH_AGE_DATE_SOURCE", "published")
                .strip()
                .lower(),
            ),
            metrics=MetricsSettings(
                current_window_days=int(os.getenv("CONTENT_REFRESH_CURRENT_WINDOW_DAYS", "90")),
                previous_window_offset_days=int(
                    os.getenv("CONTENT_REFRESH_PREVIOUS_WINDOW_OFFSET_DAYS", "91"),
                ),
                previous_window_days=int(os.getenv("CONTENT_REFRESH_PREVIOUS_WINDOW_DAYS", "90")),
                cache_ttl_seconds=int(os.getenv("CONTENT_REFRESH_CACHE_TTL_SECONDS", "86400")),
                empty_cache_ttl_seconds=int(
                    os.getenv("CONTENT_REFRESH_EMPTY_CACHE_TTL_SECONDS", "3600"),
                ),
                metrics_file=Path(metrics_file) if metrics_file else None,
            ),
            leases=LeaseSettings(
                draft_ttl_seconds=int(
                    os.getenv("CONTENT_REFRESH_DRAFT_LEASE_TTL_SECONDS", "1200"),
                ),
                draft_max_attempts=int(os.getenv("CONTENT_REFRESH_DRAFT_LEASE_ATTEMPTS", "3")),
                draft_backoff_seconds=float(
                    os.getenv("CONTENT_REFRESH_DRAFT_LEASE_BACKOFF_SECONDS", "0.5"),
                ),
                analysis_ttl_seconds=int(
                    os.getenv("CONTENT_REFRESH_ANALYSIS_LEASE_TTL_SECONDS", "900"),
                ),
            ),
            reconcile=ReconcileSettings(
                grace_seconds=int(os.getenv("CONTENT_REFRESH_RECONCILE_GRACE_SECONDS", "120")),
                run_on_progress=_env_bool(
                    "CONTENT_REFRESH_RECONCILE_ON_PROGRESS",
                    default=True,
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("CONTENT_REFRESH_WORKER_ID", "worker-local"),
                poll_interval_seconds=float(
                    os.getenv("CONTENT_REFRESH_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                retry_base_seconds=int(os.getenv("CONTENT_REFRESH_RETRY_BASE_SECONDS", "30")),
                retry_max_seconds=int(os.getenv("CONTENT_REFRESH_RETRY_MAX_SECONDS", "900")),
                max_attempts=int(os.getenv("CONTENT_REFRESH_TASK_MAX_ATTEMPTS", "3")),
                stale_task_seconds=int(os.getenv("CONTENT_REFRESH_STALE_TASK_SECONDS", "1800")),
            ),
            generation=GenerationSettings(
                command_template=os.getenv("CONTENT_REFRESH_GENERATOR_COMMAND", "").strip(),
                agent=os.getenv("CONTENT_REFRESH_GENERATOR_AGENT", "echo").strip().lower(),
                model=os.getenv("CONTENT_REFRESH_GENERATOR_MODEL", "echo").strip(),
                timeout_seconds=int(os.getenv("CONTENT_REFRESH_GENERATOR_TIMEOUT_SECONDS", "600")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the pipelines cannot run with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("CONTENT_REFRESH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.prioritization.batch_size <= 0:
            raise ValueError("CONTENT_REFRESH_BATCH_SIZE must be a positive integer.")
        if self.prioritization.job_ttl_seconds <= 0:
            raise ValueError("CONTENT_REFRESH_JOB_TTL_SECONDS must be > 0.")
        if self.prioritization.job_stale_after_seconds <= 0:
            raise ValueError("CONTENT_REFRESH_JOB_STALE_AFTER_SECONDS must be > 0.")
        if self.prioritization.age_date_source not in AGE_DATE_SOURCES:
            raise ValueError(
                "CONTENT_REFRESH_AGE_DATE_SOURCE must be one of "
                f"{', '.join(AGE_DATE_SOURCES)}, got {self.prioritization.age_date_source!r}.",
            )
        if self.metrics.current_window_days <= 0 or self.metrics.previous_window_days <= 0:
            raise ValueError("Metrics window lengths must be positive.")
        if self.metrics.previous_window_offset_days <= self.metrics.current_window_days:
            raise ValueError(
                "CONTENT_REFRESH_PREVIOUS_WINDOW_OFFSET_DAYS must be greater than "
                "CONTENT_REFRESH_CURRENT_WINDOW_DAYS so windows do not overlap.",
            )
        if self.metrics.cache_ttl_seconds < 0 or self.metrics.empty_cache_ttl_seconds < 0:
            raise ValueError("Metrics cache TTLs must be >= 0.")
        if self.leases.draft_ttl_seconds <= 0 or self.leases.analysis_ttl_seconds <= 0:
            raise ValueError("Lease TTLs must be > 0.")
        if self.leases.draft_max_attempts < 1 or self.leases.analysis_max_attempts < 1:
            raise ValueError("Lease attempts must be >= 1.")
        if self.generation.timeout_seconds <= 0:
            raise ValueError("CONTENT_REFRESH_GENERATOR_TIMEOUT_SECONDS must be > 0.")
        for name, ttl in (
            ("CONTENT_REFRESH_DRAFT_LEASE_TTL_SECONDS", self.leases.draft_ttl_seconds),
            ("CONTENT_REFRESH_ANALYSIS_LEASE_TTL_SECONDS", self.leases.analysis_ttl_seconds),
        ):
            if ttl <= self.generation.timeout_seconds:
                raise ValueError(
                    f"{name} must exceed CONTENT_REFRESH_GENERATOR_TIMEOUT_SECONDS "
                    f"({ttl} <= {self.generation.timeout_seconds}).",
                )
        if self.reconcile.grace_seconds < 0:
            raise ValueError("CONTENT_REFRESH_RECONCILE_GRACE_SECONDS must be >= 0.")
        if self.worker.max_attempts < 1:
            raise ValueError("CONTENT_REFRESH_TASK_MAX_ATTEMPTS must be >= 1.")
        if self.worker.retry_base_seconds < 0 or self.worker.retry_max_seconds < 0:
            raise ValueError("Retry delays must be >= 0.")
        if self.generation.command_template and "{prompt" not in self.generation.command_template:
            raise ValueError(
                "CONTENT_REFRESH_GENERATOR_COMMAND must include {prompt} or {prompt_file}.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
