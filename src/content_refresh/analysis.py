"""Single-item content analysis guarded by a per-item lease."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from content_refresh.collaborators import TextGenerator
from content_refresh.config import LeaseSettings
from content_refresh.drafts.validator import parse_generated_json
from content_refresh.errors import AnalysisError, ItemNotFoundError
from content_refresh.leases import LeaseManager, analysis_lease_key
from content_refresh.models import AnalysisRecordView, AnalysisStatus, ContentItemView
from content_refresh.pricing import estimate_cost_usd
from content_refresh.repository import ContentRepository

logger = logging.getLogger(__name__)

# Finding categories whose list lengths add up to the issue count.
_NESTED_ISSUE_KEYS = ("user_experience", "ai_visibility")
_LIST_ISSUE_KEYS = (
    "factual_updates",
    "search_optimization",
    "content_quality",
    "ux_issues",
    "seo_issues",
    "content_freshness",
)

ANALYSIS_INSTRUCTIONS = """\
Review the item for outdated facts, search optimization gaps, user experience
problems, and visibility in AI answers. Respond with one JSON object with keys
user_experience {issues: []}, factual_updates [], search_optimization [],
ai_visibility {issues: [], opportunities: []}, and summary."""


def count_issues(findings: dict[str, Any]) -> int:
    total = 0
    for key in _NESTED_ISSUE_KEYS:
        section = findings.get(key)
        if isinstance(section, dict) and isinstance(section.get("issues"), list):
            total += len(section["issues"])
    for key in _LIST_ISSUE_KEYS:
        value = findings.get(key)
        if isinstance(value, list):
            total += len(value)
    return total


def build_analysis_prompt(item: ContentItemView) -> str:
    payload = {
        "item_id": item.item_id,
        "url": item.url,
        "title": item.title,
        "excerpt": item.excerpt,
        "content": item.content,
        "published_at": item.published_at.isoformat(),
        "modified_at": item.modified_at.isoformat() if item.modified_at else None,
    }
    return "\n".join(
        [
            "TASK: analysis",
            f"ITEM: {json.dumps(payload, ensure_ascii=False)}",
            "",
            ANALYSIS_INSTRUCTIONS,
        ],
    )


class AnalysisPipeline:
    """Run one analysis at a time per item and persist findings with telemetry."""

    def __init__(
        self,
        *,
        repository: ContentRepository,
        leases: LeaseManager,
        generator: TextGenerator,
        settings: LeaseSettings | None = None,
    ) -> None:
        self.repository = repository
        self.leases = leases
        self.generator = generator
        self.settings = settings or LeaseSettings()

    def analyze(self, item_id: int) -> AnalysisRecordView:
        item = self.repository.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)

        with self.leases.held(
            analysis_lease_key(item_id),
            ttl_seconds=self.settings.analysis_ttl_seconds,
            max_attempts=self.settings.analysis_max_attempts,
            backoff_seconds=self.settings.analysis_backoff_seconds,
            busy_message="Analysis already in progress for this item. Try again shortly.",
        ):
            self.repository.start_analysis(item_id)
            self.repository.set_analysis_status(item_id, AnalysisStatus.ANALYZING)
            started = time.monotonic()
            try:
                result = self.generator.generate(build_analysis_prompt(item))
                findings = parse_generated_json(result.text)
                issues_count = count_issues(findings)
                self.repository.save_analysis(
                    item_id,
                    findings=findings,
                    issues_count=issues_count,
                    processing_seconds=round(time.monotonic() - started, 3),
                    usage=result.usage,
                    estimated_cost_usd=estimate_cost_usd(
                        agent=self.generator.agent,
                        usage=result.usage,
                    ),
                )
            except Exception as error:
                logger.exception("Analysis failed for item %s.", item_id)
                self.repository.save_analysis_error(
                    item_id,
                    message=str(error) or type(error).__name__,
                    processing_seconds=round(time.monotonic() - started, 3),
                )
                raise AnalysisError(item_id, str(error)) from error

        logger.info("Analyzed item %s (issues=%s).", item_id, issues_count)
        record = self.repository.get_analysis(item_id)
        if record is None:  # pragma: no cover - row was just written
            raise AnalysisError(item_id, "analysis record missing after save")
        return record
