"""Exception types surfaced by content refresh operations."""

from __future__ import annotations


class ContentRefreshError(RuntimeError):
    """Base error for user-facing failures."""


class JobAlreadyRunningError(ContentRefreshError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"A prioritization job is already in progress (job_id={job_id}).")
        self.job_id = job_id


class NothingToDoError(ContentRefreshError):
    """No published items exist to score."""


class MetricsSourceUnavailableError(ContentRefreshError):
    """Metrics source is not authenticated or not reachable."""


class ItemNotFoundError(ContentRefreshError):
    def __init__(self, item_id: int) -> None:
        super().__init__(f"Content item not found: {item_id}")
        self.item_id = item_id


class LeaseUnavailableError(ContentRefreshError):
    """Lease is held by another worker; the caller may retry shortly."""

    def __init__(self, key: str, message: str | None = None) -> None:
        super().__init__(message or f"Operation already in progress for {key}.")
        self.key = key


class DraftExistsError(ContentRefreshError):
    def __init__(self, item_id: int) -> None:
        super().__init__(
            "A draft already exists for this item. Please approve or reject it first "
            f"(item_id={item_id}).",
        )
        self.item_id = item_id


class DraftCreationError(ContentRefreshError):
    def __init__(self, item_id: int, message: str) -> None:
        super().__init__(f"Draft creation failed for item {item_id}: {message}")
        self.item_id = item_id


class AnalysisError(ContentRefreshError):
    def __init__(self, item_id: int, message: str) -> None:
        super().__init__(f"Analysis failed for item {item_id}: {message}")
        self.item_id = item_id


class BatchFatalError(ContentRefreshError):
    """A batch cannot be processed at all (for example its slice is empty)."""


class MetricsFetchError(ContentRefreshError):
    """Metrics collaborator failed for one key and window."""


class GenerationError(ContentRefreshError):
    """Text generation collaborator failed."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class InvalidGenerationOutputError(ContentRefreshError):
    """Generated text could not be parsed into the expected structure."""
