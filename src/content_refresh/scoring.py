"""Pure scoring rules for content refresh prioritization.

Every function here is deterministic and free of I/O so a scoring pass can be
re-run on the same inputs and land on the same composite score.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass

from content_refresh.models import MetricsWindow, TrackedItemView

logger = logging.getLogger(__name__)

SUB_SCORE_MAX = 30
MAX_PRIORITY_SCORE = 90
IMPRESSION_SATURATION = 10_000
NO_RANKING_CTR = 0.01
ASSUMED_POSITION_GAIN = 2
UNRANKED_ESTIMATE_POSITION = 10.0
OUTPERFORMING_GROWTH = 1.15

# Expected click-through rate by rounded search position.
CTR_BENCHMARKS: dict[int, float] = {
    1: 0.2895,
    2: 0.1247,
    3: 0.0741,
    4: 0.0490,
    5: 0.0344,
    6: 0.0251,
    7: 0.0184,
    8: 0.0140,
    9: 0.0111,
    10: 0.0091,
    11: 0.0084,
    12: 0.0088,
    13: 0.0101,
    14: 0.0114,
    15: 0.0125,
    16: 0.0136,
    17: 0.0136,
    18: 0.0143,
    19: 0.0146,
    20: 0.0139,
}
LAST_BENCHMARK_POSITION = max(CTR_BENCHMARKS)


@dataclass(slots=True)
class ScoreBreakdown:
    content_age_score: int
    traffic_decline_score: int
    traffic_potential_score: int
    priority_score: int
    clamped: bool = False


@dataclass(slots=True)
class ClickPotential:
    """Estimated extra clicks for one item after a refresh."""

    item_id: int
    current_clicks: int
    current_impressions: int
    current_ctr: float
    current_position: float
    improved_position: float
    target_ctr: float
    effective_target_ctr: float
    is_outperforming: bool
    potential_clicks: int
    priority_score: int


@dataclass(slots=True)
class ClickPotentialReport:
    total_potential_clicks: int
    items: list[ClickPotential]


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going away from zero."""

    if value < 0:
        return -round_half_up(-value)
    return int(math.floor(value + 0.5))


def expected_ctr(position: float) -> float:
    """Benchmark CTR for a search position.

    Positions without ranking data (``<= 0``) get ``NO_RANKING_CTR``. Positions
    deeper than the benchmark table reuse the last benchmarked position.
    """

    if position <= 0:
        return NO_RANKING_CTR
    bucket = max(1, round_half_up(position))
    if bucket > LAST_BENCHMARK_POSITION:
        bucket = LAST_BENCHMARK_POSITION
    return CTR_BENCHMARKS[bucket]


def content_age_score(age_days: float) -> int:
    if age_days > 365:
        return 30
    if age_days > 180:
        return 23
    if age_days > 90:
        return 15
    if age_days > 30:
        return 8
    return 0


def traffic_decline_score(current_clicks: int, previous_clicks: int) -> int:
    if previous_clicks <= 0:
        return 0
    decline_pct = max(0, previous_clicks - current_clicks) / previous_clicks * 100
    if decline_pct >= 50:
        return 30
    if decline_pct >= 30:
        return 25
    if decline_pct >= 20:
        return 20
    if decline_pct >= 10:
        return 15
    if decline_pct > 0:
        return 10
    return 0


def traffic_potential_score(impressions: int, ctr: float, position: float) -> int:
    if impressions <= 0:
        return 0
    benchmark = expected_ctr(position)
    gap = max(0.0, benchmark - ctr)
    if gap == 0:
        return 0
    impression_factor = min(1.0, impressions / IMPRESSION_SATURATION)
    raw_score = (gap / benchmark) * impression_factor * SUB_SCORE_MAX
    return round_half_up(min(SUB_SCORE_MAX, raw_score))


def score_item(
    *,
    age_days: float,
    current: MetricsWindow,
    previous: MetricsWindow,
) -> ScoreBreakdown:
    """Compute all sub-scores and the clamped composite priority score."""

    age = content_age_score(age_days)
    decline = traffic_decline_score(current.clicks, previous.clicks)
    potential = traffic_potential_score(current.impressions, current.ctr, current.position)
    total = age + decline + potential
    clamped = False
    if total > MAX_PRIORITY_SCORE:
        logger.warning(
            "Priority score %s exceeds maximum %s and was clamped "
            "(age=%s decline=%s potential=%s).",
            total,
            MAX_PRIORITY_SCORE,
            age,
            decline,
            potential,
        )
        total = MAX_PRIORITY_SCORE
        clamped = True
    return ScoreBreakdown(
        content_age_score=age,
        traffic_decline_score=decline,
        traffic_potential_score=potential,
        priority_score=max(0, total),
        clamped=clamped,
    )


def fallback_score(*, age_days: float) -> ScoreBreakdown:
    """Score used when metrics are unavailable: content age only."""

    age = content_age_score(age_days)
    return ScoreBreakdown(
        content_age_score=age,
        traffic_decline_score=0,
        traffic_potential_score=0,
        priority_score=age,
    )


def estimate_click_potential(
    rows: Iterable[TrackedItemView],
    *,
    limit: int = 20,
) -> ClickPotentialReport:
    """Estimate extra clicks a refresh could bring, assuming a two-position gain."""

    items: list[ClickPotential] = []
    total = 0.0
    for row in rows:
        current = row.current
        if current.is_empty():
            continue
        position = current.position if current.position > 0 else UNRANKED_ESTIMATE_POSITION
        improved_position = max(1.0, position - ASSUMED_POSITION_GAIN)
        target = expected_ctr(improved_position)
        effective_target = current.ctr * OUTPERFORMING_GROWTH if current.ctr > target else target
        potential = max(0.0, current.impressions * effective_target - current.clicks)
        total += potential
        items.append(
            ClickPotential(
                item_id=row.item_id,
                current_clicks=current.clicks,
                current_impressions=current.impressions,
                current_ctr=current.ctr,
                current_position=position,
                improved_position=improved_position,
                target_ctr=target,
                effective_target_ctr=effective_target,
                is_outperforming=current.ctr > expected_ctr(position),
                potential_clicks=round_half_up(potential),
                priority_score=row.priority_score,
            ),
        )
    items.sort(key=lambda item: item.current_clicks, reverse=True)
    return ClickPotentialReport(total_potential_clicks=round_half_up(total), items=items[:limit])
