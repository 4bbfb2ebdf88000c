from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from content_refresh.drafts.validator import (
    build_diff,
    parse_generated_json,
    remove_utm_parameters,
    validate_updated_content,
)
from content_refresh.errors import InvalidGenerationOutputError
from content_refresh.models import ContentItemView, ItemStatus

pytestmark = [
    allure.epic("Single-item Operations"),
    allure.feature("Draft Validation"),
]


def _original() -> ContentItemView:
    return ContentItemView(
        item_id=1,
        url="https://example.com/posts/1",
        title="Old title",
        content="<p>Intro.</p>\n<p>Body.</p>",
        excerpt="Old excerpt",
        meta_title="Old meta",
        meta_description=None,
        status=ItemStatus.PUBLISHED,
        published_at=datetime(2025, 1, 1, tzinfo=UTC),
        modified_at=None,
    )


@pytest.mark.parametrize(
    "text",
    [
        '{"title": "A"}',
        '```json\n{"title": "A"}\n```',
        '\ufeff{"title": "A"}',
        'Here you go: {"title": "A"}',
        '{"title": "A\x07"}',
    ],
)
def test_parse_generated_json_accepts_common_wrappings(text: str) -> None:
    assert parse_generated_json(text) == {"title": "A"}


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("", "empty"),
        ("```json\n```", "empty"),
        ('{"title": {"nested": 1}', "unbalanced"),
        ('{"title": "A"} trailing words', "closing brace"),
        ("[1, 2, {}]", "closing brace"),
        ("{not json}", "Failed to parse"),
    ],
)
def test_parse_generated_json_rejects_bad_output(text: str, message: str) -> None:
    with pytest.raises(InvalidGenerationOutputError, match=message):
        parse_generated_json(text)


def test_validate_falls_back_to_original_for_blank_fields() -> None:
    validated = validate_updated_content(
        {
            "title": "  New title  ",
            "excerpt": "   ",
            "content": 42,
            "changes_made": ["Rewrote intro"],
            "seo_improvements": "not a list",
            "update_summary": " Fresh ",
        },
        _original(),
    )

    assert validated["title"] == "New title"
    assert validated["excerpt"] == "Old excerpt"
    assert validated["content"] == "<p>Intro.</p>\n<p>Body.</p>"
    assert validated["meta_title"] == "Old meta"
    assert validated["meta_description"] == ""
    assert validated["changes_made"] == ["Rewrote intro"]
    assert validated["seo_improvements"] == []
    assert validated["addressed_issues"] == []
    assert validated["update_summary"] == "Fresh"


def test_validate_strips_tracking_parameters_from_body_links() -> None:
    validated = validate_updated_content(
        {
            "content": (
                '<a href="https://example.com/x?utm_source=ai&id=5&utm_medium=chat">x</a>'
            ),
        },
        _original(),
    )

    assert validated["content"] == '<a href="https://example.com/x?id=5">x</a>'


def test_remove_utm_parameters_leaves_other_links_alone() -> None:
    html = (
        "<a href='https://example.com/plain'>a</a> "
        '<a href="https://example.com/q?utm_campaign=z">b</a> '
        "text mentioning utm_source=keep"
    )

    assert remove_utm_parameters(html) == (
        "<a href='https://example.com/plain'>a</a> "
        '<a href="https://example.com/q">b</a> '
        "text mentioning utm_source=keep"
    )


def test_build_diff_reports_changed_fields_and_line_counts() -> None:
    original = _original()
    validated = validate_updated_content(
        {
            "title": "New title",
            "content": "<p>Intro.</p>\n<p>Updated body.</p>\n<p>Extra.</p>",
        },
        original,
    )

    diff = build_diff(original, validated)

    assert diff["changed_fields"] == ["title", "content"]
    assert diff["fields"] == {"title": {"before": "Old title", "after": "New title"}}
    assert diff["lines_added"] == 2
    assert diff["lines_removed"] == 1
    assert diff["content_diff"][0] == "--- original"
    assert diff["content_diff"][1] == "+++ draft"


def test_build_diff_without_changes_is_empty() -> None:
    original = _original()
    validated = validate_updated_content({}, original)

    diff = build_diff(original, validated)

    assert diff["changed_fields"] == []
    assert diff["content_diff"] == []
    assert diff["lines_added"] == 0
