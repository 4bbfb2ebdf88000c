"""Score one content item from cached search metrics."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from content_refresh.collaborators import MetricsSource
from content_refresh.config import MetricsSettings
from content_refresh.errors import ItemNotFoundError
from content_refresh.models import (
    ContentItemView,
    ItemResult,
    ItemStatus,
    MetricsWindow,
    ScoreWrite,
)
from content_refresh.repository import ContentRepository, metrics_cache_key
from content_refresh.scoring import ScoreBreakdown, fallback_score, score_item
from content_refresh.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class MetricsWindows:
    """Inclusive date bounds of the current and previous windows."""

    current_start: date
    current_end: date
    previous_start: date
    previous_end: date


def compute_windows(today: date, settings: MetricsSettings) -> MetricsWindows:
    previous_end = today - timedelta(days=settings.previous_window_offset_days)
    return MetricsWindows(
        current_start=today - timedelta(days=settings.current_window_days),
        current_end=today,
        previous_start=previous_end - timedelta(days=settings.previous_window_days),
        previous_end=previous_end,
    )


class ItemProcessor:
    """Compute and persist the priority score of a single item.

    `process` reports every failure through `ItemResult` and never raises, so a
    batch loop can keep going past individual bad items.
    """

    def __init__(
        self,
        *,
        repository: ContentRepository,
        metrics_source: MetricsSource,
        settings: MetricsSettings | None = None,
        age_date_source: str = "published",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.metrics_source = metrics_source
        self.settings = settings or MetricsSettings()
        self.age_date_source = age_date_source
        self._clock = clock

    def process(self, item_id: int) -> ItemResult:
        now = to_utc_aware_datetime(self._clock())
        item: ContentItemView | None = None
        try:
            item = self.repository.get_item(item_id)
            if item is None:
                raise ItemNotFoundError(item_id)
            if item.status != ItemStatus.PUBLISHED:
                raise ValueError(f"Item {item_id} is not published (status={item.status.value}).")

            windows = compute_windows(now.date(), self.settings)
            current, current_hit = self._window_metrics(
                item.url,
                windows.current_start,
                windows.current_end,
            )
            previous, previous_hit = self._window_metrics(
                item.url,
                windows.previous_start,
                windows.previous_end,
            )
            breakdown = score_item(
                age_days=self._age_days(item, now),
                current=current,
                previous=previous,
            )
            scores = _to_score_write(breakdown, current=current, previous=previous)
            self.repository.save_scores(item_id, scores)
            return ItemResult(
                item_id=item_id,
                success=True,
                cache_hit=current_hit and previous_hit,
                metrics=scores,
            )
        except Exception as error:  # noqa: BLE001
            message = str(error) or type(error).__name__
            logger.warning("Scoring failed for item %s: %s", item_id, message)
            return self._fallback(item_id=item_id, item=item, now=now, message=message)

    def _window_metrics(
        self,
        key: str,
        window_start: date,
        window_end: date,
    ) -> tuple[MetricsWindow, bool]:
        cache_key = metrics_cache_key(key, window_start.isoformat(), window_end.isoformat())
        cached = self.repository.get_cached_metrics(cache_key)
        if cached is not None:
            return cached, True

        window = self.metrics_source.fetch_metrics(key, window_start, window_end)
        ttl_seconds = (
            self.settings.empty_cache_ttl_seconds
            if window.is_empty()
            else self.settings.cache_ttl_seconds
        )
        self.repository.put_cached_metrics(cache_key, window, ttl_seconds=ttl_seconds)
        return window, False

    def _age_days(self, item: ContentItemView, now: datetime) -> float:
        reference = item.published_at
        if (
            self.age_date_source == "modified"
            and item.modified_at is not None
            and item.modified_at > item.published_at
        ):
            reference = item.modified_at
        return max(0.0, (now - to_utc_aware_datetime(reference)).total_seconds() / 86_400)

    def _fallback(
        self,
        *,
        item_id: int,
        item: ContentItemView | None,
        now: datetime,
        message: str,
    ) -> ItemResult:
        age_days = self._age_days(item, now) if item is not None else 0.0
        zero = MetricsWindow()
        scores = _to_score_write(fallback_score(age_days=age_days), current=zero, previous=zero)
        try:
            self.repository.save_scores(item_id, scores)
        except Exception as error:  # noqa: BLE001
            logger.exception("Fallback score write failed for item %s.", item_id)
            return ItemResult(
                item_id=item_id,
                success=False,
                error=f"{message}; fallback write failed: {error}",
            )
        return ItemResult(item_id=item_id, success=False, error=message, metrics=scores)


def _to_score_write(
    breakdown: ScoreBreakdown,
    *,
    current: MetricsWindow,
    previous: MetricsWindow,
) -> ScoreWrite:
    return ScoreWrite(
        current=current,
        previous=previous,
        content_age_score=breakdown.content_age_score,
        traffic_decline_score=breakdown.traffic_decline_score,
        traffic_potential_score=breakdown.traffic_potential_score,
        priority_score=breakdown.priority_score,
    )
