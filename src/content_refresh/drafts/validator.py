"""Parse, validate, and diff generated rewrites."""

from __future__ import annotations

import difflib
import json
import re
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from content_refresh.errors import InvalidGenerationOutputError
from content_refresh.models import ContentItemView

TEXT_FIELDS = ("title", "meta_title", "meta_description", "excerpt", "content")
REVIEW_LIST_FIELDS = ("changes_made", "seo_improvements", "content_updates", "addressed_issues")
UTM_PARAMS = frozenset({"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content"})

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.MULTILINE | re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$", re.MULTILINE)
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_HREF_URL = re.compile(r"""(href=["'])(https?://[^"']+?)(["'])""", re.IGNORECASE)


def parse_generated_json(text: str) -> dict[str, Any]:
    """Extract one JSON object from model output.

    Raises `InvalidGenerationOutputError` for empty or truncated output and for
    text that contains no parseable object.
    """

    stripped = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text)).rstrip()
    if not stripped:
        raise InvalidGenerationOutputError("Generated response was empty.")
    if stripped.count("{") != stripped.count("}"):
        raise InvalidGenerationOutputError(
            "Generated response was incomplete or truncated (unbalanced braces).",
        )
    if not stripped.endswith("}"):
        raise InvalidGenerationOutputError(
            "Generated response was truncated (does not end with a closing brace).",
        )

    cleaned = _CONTROL_CHARS.sub("", stripped).replace("\ufeff", "").strip()
    for candidate in (cleaned, stripped):
        parsed = _try_load_dict(candidate)
        if parsed is not None:
            return parsed

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start != -1 and end > start:
        parsed = _try_load_dict(_CONTROL_CHARS.sub("", stripped[start : end + 1]))
        if parsed is not None:
            return parsed

    match = _FENCED_JSON.search(text)
    if match is not None:
        parsed = _try_load_dict(match.group(1))
        if parsed is not None:
            return parsed

    raise InvalidGenerationOutputError("Failed to parse generated response as a JSON object.")


def validate_updated_content(
    updated: dict[str, Any],
    original: ContentItemView,
) -> dict[str, Any]:
    """Keep non-empty generated fields, falling back to the original values."""

    fallback = {
        "title": original.title,
        "meta_title": original.meta_title or "",
        "meta_description": original.meta_description or "",
        "excerpt": original.excerpt,
        "content": original.content,
    }
    validated: dict[str, Any] = {}
    for name in TEXT_FIELDS:
        value = updated.get(name)
        if isinstance(value, str) and value.strip():
            text = value.strip()
            if name in {"excerpt", "content"}:
                text = remove_utm_parameters(text)
            validated[name] = text
        else:
            validated[name] = fallback[name]

    for name in REVIEW_LIST_FIELDS:
        value = updated.get(name)
        validated[name] = list(value) if isinstance(value, list) else []
    summary = updated.get("update_summary")
    validated["update_summary"] = summary.strip() if isinstance(summary, str) else ""
    return validated


def remove_utm_parameters(html: str) -> str:
    """Drop utm_* query parameters from linked URLs."""

    def _clean(match: re.Match[str]) -> str:
        prefix, url, suffix = match.groups()
        parts = urlsplit(url)
        if not parts.query:
            return match.group(0)
        params = [
            (key, value)
            for key, value in parse_qsl(parts.query, keep_blank_values=True)
            if key not in UTM_PARAMS
        ]
        clean_url = urlunsplit(
            (parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment),
        )
        return f"{prefix}{clean_url}{suffix}"

    return _HREF_URL.sub(_clean, html)


def build_diff(original: ContentItemView, validated: dict[str, Any]) -> dict[str, Any]:
    """Structured diff between the stored item and the validated rewrite."""

    before = {
        "title": original.title,
        "meta_title": original.meta_title or "",
        "meta_description": original.meta_description or "",
        "excerpt": original.excerpt,
        "content": original.content,
    }
    changed_fields = [name for name in TEXT_FIELDS if before[name] != validated.get(name, "")]
    fields = {
        name: {"before": before[name], "after": validated.get(name, "")}
        for name in changed_fields
        if name != "content"
    }
    content_diff = list(
        difflib.unified_diff(
            before["content"].splitlines(),
            str(validated.get("content", "")).splitlines(),
            fromfile="original",
            tofile="draft",
            lineterm="",
        ),
    )
    added = sum(1 for line in content_diff if line.startswith("+") and not line.startswith("+++"))
    removed = sum(
        1 for line in content_diff if line.startswith("-") and not line.startswith("---")
    )
    return {
        "changed_fields": changed_fields,
        "fields": fields,
        "content_diff": content_diff,
        "lines_added": added,
        "lines_removed": removed,
    }


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
