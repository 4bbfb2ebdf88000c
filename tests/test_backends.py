from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from pathlib import Path

import allure
import pytest

from conftest import make_item
from content_refresh.analysis import build_analysis_prompt, count_issues
from content_refresh.backends import (
    CommandTextGenerator,
    EchoTextGenerator,
    JsonFileMetricsSource,
    extract_usage,
)
from content_refresh.drafts.validator import parse_generated_json
from content_refresh.errors import GenerationError, MetricsFetchError
from content_refresh.models import MetricsWindow
from content_refresh.repository import ContentRepository

pytestmark = [
    allure.epic("Collaborators"),
    allure.feature("Local Adapters"),
]


def _write_metrics(path: Path, payload: object) -> Path:
    path.write_text(json.dumps(payload), "utf-8")
    return path


def test_json_metrics_source_aggregates_rows_inside_window(tmp_path: Path) -> None:
    source = JsonFileMetricsSource(
        _write_metrics(
            tmp_path / "metrics.json",
            {
                "rows": {
                    "https://example.com/a": [
                        {"date": "2026-09-01", "clicks": 3, "impressions": 100, "position": 4.0},
                        {"date": "2026-09-02", "clicks": 1, "impressions": 300, "position": 8.0},
                        {"date": "2026-05-01", "clicks": 50, "impressions": 50, "position": 1.0},
                    ],
                },
            },
        ),
    )

    window = source.fetch_metrics("https://example.com/a", date(2026, 8, 1), date(2026, 9, 30))

    assert source.is_authenticated() is True
    assert window.clicks == 4
    assert window.impressions == 400
    assert window.ctr == pytest.approx(0.01)
    assert window.position == pytest.approx(7.0)


def test_json_metrics_source_returns_zero_window_for_unknown_key(tmp_path: Path) -> None:
    source = JsonFileMetricsSource(_write_metrics(tmp_path / "metrics.json", {"rows": {}}))

    window = source.fetch_metrics("https://example.com/none", date(2026, 1, 1), date(2026, 2, 1))

    assert window == MetricsWindow()


def test_json_metrics_source_reports_authentication_state(tmp_path: Path) -> None:
    missing = JsonFileMetricsSource(tmp_path / "absent.json")
    revoked = JsonFileMetricsSource(
        _write_metrics(tmp_path / "revoked.json", {"authenticated": False, "rows": {}}),
    )
    broken_path = tmp_path / "broken.json"
    broken_path.write_text("{not json", "utf-8")

    assert missing.is_authenticated() is False
    assert revoked.is_authenticated() is False
    assert JsonFileMetricsSource(broken_path).is_authenticated() is False


def test_json_metrics_source_rejects_malformed_rows(tmp_path: Path) -> None:
    source = JsonFileMetricsSource(
        _write_metrics(
            tmp_path / "metrics.json",
            {"rows": {"k": [{"clicks": 1}]}},
        ),
    )

    with pytest.raises(MetricsFetchError, match="Malformed metrics row"):
        source.fetch_metrics("k", date(2026, 1, 1), date(2026, 2, 1))


def test_echo_generator_answers_analysis_prompts(repository: ContentRepository) -> None:
    item = repository.upsert_item(make_item(1))

    result = EchoTextGenerator().generate(build_analysis_prompt(item))

    findings = parse_generated_json(result.text)
    assert count_issues(findings) == 2
    assert "Post 1" in findings["summary"]
    assert result.usage.total_tokens == (
        (result.usage.prompt_tokens or 0) + (result.usage.completion_tokens or 0)
    )


def test_echo_generator_answers_draft_prompts() -> None:
    prompt = "\n".join(
        [
            "TASK: draft",
            'ITEM: {"title": "Post 1", "content": "<p>Body</p>", "excerpt": "Short"}',
            "ANALYSIS: {}",
        ],
    )

    payload = parse_generated_json(EchoTextGenerator().generate(prompt).text)

    assert payload["title"] == "Post 1"
    assert payload["content"].startswith("<p>Body</p>")
    assert payload["meta_description"] == "Short"


def test_extract_usage_reads_token_markers() -> None:
    usage = extract_usage(
        'done. "prompt_tokens": 1,200 completion_tokens=300',
        model="m1",
    )

    assert usage.prompt_tokens == 1_200
    assert usage.completion_tokens == 300
    assert usage.total_tokens == 1_500
    assert usage.model == "m1"


def test_extract_usage_without_markers_is_unknown() -> None:
    usage = extract_usage("no telemetry here", model=None)

    assert usage.prompt_tokens is None
    assert usage.total_tokens is None


def test_command_generator_returns_stdout(tmp_path: Path) -> None:
    generator = CommandTextGenerator(
        command_template="printf %s {prompt}",
        agent="shell",
        model="none",
        workdir=tmp_path / "prompts",
    )

    result = generator.generate('{"ok": true}')

    assert result.text == '{"ok": true}'
    assert list((tmp_path / "prompts").iterdir()) == []


def test_command_generator_reports_non_zero_exit(tmp_path: Path) -> None:
    generator = CommandTextGenerator(
        command_template="sh -c 'echo failing >&2; exit 3' {prompt}",
        agent="shell",
        model="none",
        workdir=tmp_path / "prompts",
    )

    with pytest.raises(GenerationError, match="exited with code 3") as excinfo:
        generator.generate("hello")

    assert excinfo.value.transient is False


def test_command_generator_reports_missing_binary(tmp_path: Path) -> None:
    generator = CommandTextGenerator(
        command_template="definitely-not-a-real-binary-xyz {prompt}",
        agent="shell",
        model="none",
        workdir=tmp_path / "prompts",
    )

    with pytest.raises(GenerationError, match="not found"):
        generator.generate("hello")


def test_command_generator_keeps_concurrent_prompt_files_apart(tmp_path: Path) -> None:
    generator = CommandTextGenerator(
        command_template="sh -c 'sleep 0.3; cat \"$0\"' {prompt_file}",
        agent="shell",
        model="none",
        workdir=tmp_path / "prompts",
    )
    prompts = [f"prompt for item {item_id}" for item_id in range(4)]

    with ThreadPoolExecutor(max_workers=len(prompts)) as pool:
        texts = [result.text for result in pool.map(generator.generate, prompts)]

    assert texts == prompts
    assert list((tmp_path / "prompts").iterdir()) == []
