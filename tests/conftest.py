"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

import pytest

from content_refresh.errors import GenerationError, MetricsFetchError
from content_refresh.models import (
    ContentItemWrite,
    GenerationResult,
    ItemStatus,
    MetricsWindow,
    TokenUsage,
)
from content_refresh.repository import ContentRepository

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


class FakeMetricsSource:
    """Metrics source returning canned windows per key."""

    def __init__(self, *, authenticated: bool = True) -> None:
        self.authenticated = authenticated
        self.current: dict[str, MetricsWindow] = {}
        self.previous: dict[str, MetricsWindow] = {}
        self.failing_keys: set[str] = set()
        self.calls: list[tuple[str, date, date]] = []

    def is_authenticated(self) -> bool:
        return self.authenticated

    def fetch_metrics(self, key: str, window_start: date, window_end: date) -> MetricsWindow:
        self.calls.append((key, window_start, window_end))
        if key in self.failing_keys:
            raise MetricsFetchError(f"API error for {key}")
        # The current window always ends on the reference day; the previous one does not.
        is_current = window_end >= date.today() - timedelta(days=1)
        table = self.current if is_current else self.previous
        return table.get(key, MetricsWindow())


class FakeGenerator:
    """Text generator replaying queued responses."""

    agent = "fake"

    def __init__(self, responses: list[str] | None = None) -> None:
        self.responses = list(responses or [])
        self.prompts: list[str] = []
        self.error: Exception | None = None
        self.on_generate: Callable[[], None] | None = None

    def generate(self, prompt: str) -> GenerationResult:
        self.prompts.append(prompt)
        if self.on_generate is not None:
            self.on_generate()
        if self.error is not None:
            raise self.error
        if not self.responses:
            raise GenerationError("no canned response left")
        return GenerationResult(
            text=self.responses.pop(0),
            usage=TokenUsage(
                prompt_tokens=1000,
                completion_tokens=500,
                total_tokens=1500,
                model="fake-model",
            ),
        )


def item_url(item_id: int) -> str:
    return f"https://example.com/posts/{item_id}"


def make_item(
    item_id: int,
    *,
    published_at: datetime | None = None,
    status: ItemStatus = ItemStatus.PUBLISHED,
    content: str = "<p>Original body.</p>",
    modified_at: datetime | None = None,
) -> ContentItemWrite:
    return ContentItemWrite(
        item_id=item_id,
        url=item_url(item_id),
        title=f"Post {item_id}",
        published_at=published_at or datetime(2025, 1, 1, tzinfo=UTC),
        content=content,
        excerpt=f"Excerpt {item_id}",
        meta_title=f"Post {item_id} meta",
        meta_description=f"About post {item_id}",
        status=status,
        modified_at=modified_at,
    )


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "content_refresh.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[ContentRepository]:
    repo = ContentRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def seed_items(repository: ContentRepository) -> Callable[..., list[int]]:
    """Insert `count` published items with ids starting at `start`."""

    def _seed(count: int, *, start: int = 1) -> list[int]:
        ids = list(range(start, start + count))
        for offset, item_id in enumerate(ids):
            repository.upsert_item(
                make_item(
                    item_id,
                    published_at=datetime(2025, 1, 1, tzinfo=UTC) + timedelta(hours=offset),
                ),
            )
        return ids

    return _seed


@pytest.fixture()
def metrics_source() -> FakeMetricsSource:
    return FakeMetricsSource()
