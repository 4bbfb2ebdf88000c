"""Exclusive per-item draft creation plus approve/reject review actions."""

from __future__ import annotations

import json
import logging
from typing import Any

from content_refresh.collaborators import TextGenerator
from content_refresh.config import LeaseSettings
from content_refresh.drafts.validator import (
    build_diff,
    parse_generated_json,
    validate_updated_content,
)
from content_refresh.errors import (
    DraftCreationError,
    DraftExistsError,
    ItemNotFoundError,
)
from content_refresh.leases import LeaseManager, draft_lease_key
from content_refresh.models import (
    AnalysisRecordView,
    AnalysisStatus,
    ContentItemView,
    DraftRecordView,
    DraftStatus,
    TokenUsage,
)
from content_refresh.pricing import estimate_cost_usd
from content_refresh.repository import ContentRepository

logger = logging.getLogger(__name__)

DRAFT_INSTRUCTIONS = """\
Rewrite the item to resolve the analysis findings. Keep facts you cannot
verify unchanged. Respond with one JSON object with keys title, meta_title,
meta_description, excerpt, content, changes_made [], seo_improvements [],
content_updates [], addressed_issues [], and update_summary."""

APPLIED_FIELDS = ("title", "meta_title", "meta_description", "excerpt", "content")


def build_draft_prompt(item: ContentItemView, analysis: AnalysisRecordView) -> str:
    payload = {
        "item_id": item.item_id,
        "url": item.url,
        "title": item.title,
        "meta_title": item.meta_title,
        "meta_description": item.meta_description,
        "excerpt": item.excerpt,
        "content": item.content,
    }
    return "\n".join(
        [
            "TASK: draft",
            f"ITEM: {json.dumps(payload, ensure_ascii=False)}",
            f"ANALYSIS: {json.dumps(analysis.findings or {}, ensure_ascii=False)}",
            "",
            DRAFT_INSTRUCTIONS,
        ],
    )


class DraftPipeline:
    """Create one rewrite draft per item and apply or discard it on review."""

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

    def create(self, item_id: int) -> DraftRecordView:
        """Generate, validate, and store a draft for one item.

        Raises `DraftExistsError` when a reviewed-pending draft already exists
        and `LeaseUnavailableError` when another creation holds the item. A missing
        item raises `ItemNotFoundError` before any status is written.
        """

        if self.repository.get_item(item_id) is None:
            raise ItemNotFoundError(item_id)
        self._ensure_no_live_draft(item_id)
        with self.leases.held(
            draft_lease_key(item_id),
            ttl_seconds=self.settings.draft_ttl_seconds,
            max_attempts=self.settings.draft_max_attempts,
            backoff_seconds=self.settings.draft_backoff_seconds,
            busy_message="Draft creation already in progress for this item. Try again shortly.",
        ):
            # A concurrent creation may have finished while we waited for the lease.
            self._ensure_no_live_draft(item_id)
            self.repository.start_draft(item_id)
            self.repository.set_draft_status(item_id, DraftStatus.CREATING)
            try:
                artifact, usage = self._generate(item_id)
                self.repository.save_draft(
                    item_id,
                    artifact=artifact,
                    usage=usage,
                    estimated_cost_usd=estimate_cost_usd(
                        agent=self.generator.agent,
                        usage=usage,
                    ),
                )
            except Exception as error:
                logger.exception("Draft creation failed for item %s.", item_id)
                message = str(error) or type(error).__name__
                self.repository.save_draft_error(item_id, message=message)
                raise DraftCreationError(item_id, str(error)) from error

        logger.info("Created draft for item %s.", item_id)
        record = self.repository.get_draft(item_id)
        if record is None:  # pragma: no cover - row was just written
            raise DraftCreationError(item_id, "draft record missing after save")
        return record

    def approve(self, item_id: int) -> ContentItemView:
        """Apply the draft to the content item, then reset the item workflow."""

        draft = self.repository.get_draft(item_id)
        if draft is None or draft.status != DraftStatus.COMPLETED or draft.artifact is None:
            raise DraftCreationError(item_id, "no completed draft to approve")
        content = draft.artifact.get("content")
        if not isinstance(content, dict):
            raise DraftCreationError(item_id, "draft artifact has no content")
        fields = {name: content[name] for name in APPLIED_FIELDS if name in content}
        if not self.repository.update_item_content(item_id, fields):
            raise ItemNotFoundError(item_id)
        self.repository.reset_item_workflow(item_id)
        logger.info("Approved draft for item %s.", item_id)
        item = self.repository.get_item(item_id)
        if item is None:  # pragma: no cover - row was just updated
            raise ItemNotFoundError(item_id)
        return item

    def reject(self, item_id: int) -> None:
        """Discard the draft and analysis so the item can start over."""

        self.repository.reset_item_workflow(item_id)
        logger.info("Rejected draft for item %s.", item_id)

    def _ensure_no_live_draft(self, item_id: int) -> None:
        existing = self.repository.get_draft(item_id)
        if (
            existing is not None
            and existing.status == DraftStatus.COMPLETED
            and existing.has_artifact
        ):
            raise DraftExistsError(item_id)

    def _generate(self, item_id: int) -> tuple[dict[str, Any], TokenUsage]:
        item = self.repository.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        analysis = self.repository.get_analysis(item_id)
        if analysis is None or analysis.status != AnalysisStatus.COMPLETED:
            raise ValueError("Item must have a completed analysis before drafting.")

        result = self.generator.generate(build_draft_prompt(item, analysis))
        parsed = parse_generated_json(result.text)
        validated = validate_updated_content(parsed, item)
        artifact = {
            "content": validated,
            "diff": build_diff(item, validated),
            "analysis_issues_count": analysis.issues_count,
        }
        return artifact, result.usage
