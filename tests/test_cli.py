from __future__ import annotations

import json
from datetime import date, timedelta
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from conftest import item_url
from content_refresh.main import content_refresh

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Content Refresh CLI"),
]


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in (
        "CONTENT_REFRESH_DB_PATH",
        "CONTENT_REFRESH_METRICS_FILE",
        "CONTENT_REFRESH_GENERATOR_COMMAND",
        "CONTENT_REFRESH_BATCH_SIZE",
        "CONTENT_REFRESH_LLM_PRICING",
    ):
        monkeypatch.delenv(name, raising=False)


def _write_items(path: Path) -> Path:
    items = [
        {
            "item_id": item_id,
            "url": item_url(item_id),
            "title": f"Post {item_id}",
            "published_at": "2024-06-01T00:00:00+00:00",
            "content": f"<p>Body {item_id}.</p>",
            "excerpt": f"Excerpt {item_id}",
            "status": status,
        }
        for item_id, status in ((1, "published"), (2, "published"), (3, "draft"))
    ]
    path.write_text(json.dumps({"items": items}), "utf-8")
    return path


def _write_metrics(path: Path) -> Path:
    recent = (date.today() - timedelta(days=10)).isoformat()
    older = (date.today() - timedelta(days=120)).isoformat()
    payload = {
        "authenticated": True,
        "rows": {
            item_url(1): [
                {"date": recent, "clicks": 10, "impressions": 2000, "position": 6.0},
                {"date": older, "clicks": 40, "impressions": 2500, "position": 3.0},
            ],
            item_url(2): [
                {"date": recent, "clicks": 30, "impressions": 600, "position": 2.0},
            ],
        },
    }
    path.write_text(json.dumps(payload), "utf-8")
    return path


def _invoke(runner: CliRunner, *args: str) -> str:
    result = runner.invoke(content_refresh, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def test_full_refresh_workflow(tmp_path: Path) -> None:
    runner = CliRunner()
    db = str(tmp_path / "cli.db")
    items_file = _write_items(tmp_path / "items.json")
    metrics_file = str(_write_metrics(tmp_path / "gsc.json"))

    output = _invoke(runner, "items", "import", "--db-path", db, str(items_file))
    assert "Imported items: total=3 published=2" in output

    output = _invoke(
        runner,
        "prioritize",
        "start",
        "--db-path",
        db,
        "--metrics-file",
        metrics_file,
    )
    assert "Prioritization started:" in output
    assert "items=2 batches=1" in output

    output = _invoke(
        runner,
        "worker",
        "--db-path",
        db,
        "--metrics-file",
        metrics_file,
        "--loop",
    )
    assert "processed=1 succeeded=1 failed=0" in output

    output = _invoke(runner, "prioritize", "progress", "--db-path", db)
    assert "status=complete" in output
    assert "processed=2/2 (100.0%)" in output

    output = _invoke(runner, "items", "list", "--db-path", db)
    lines = output.strip().splitlines()
    assert lines[0].startswith("order item_id priority")
    assert [line.split()[1] for line in lines[1:]] == ["1", "2"]

    output = _invoke(runner, "analyze", "--db-path", db, "1")
    assert "Analysis completed: item_id=1 issues=2" in output

    output = _invoke(runner, "draft", "create", "--db-path", db, "1")
    assert "Draft created: item_id=1" in output

    duplicate = runner.invoke(content_refresh, ["draft", "create", "--db-path", db, "1"])
    assert duplicate.exit_code == 1
    assert "A draft already exists" in duplicate.output

    output = _invoke(runner, "draft", "approve", "--db-path", db, "1")
    assert "Draft approved and applied: item_id=1" in output

    output = _invoke(runner, "items", "list", "--db-path", db, "--analysis-status", "pending")
    assert "pending pending" in output

    output = _invoke(runner, "potential", "--db-path", db)
    assert output.startswith("Total potential clicks:")


def test_start_without_metrics_access_fails(tmp_path: Path) -> None:
    runner = CliRunner()
    db = str(tmp_path / "cli.db")
    _invoke(runner, "items", "import", "--db-path", db, str(_write_items(tmp_path / "i.json")))

    result = runner.invoke(content_refresh, ["prioritize", "start", "--db-path", db])

    assert result.exit_code == 1
    assert "not authenticated" in result.output


def test_start_with_no_items_reports_nothing_to_do(tmp_path: Path) -> None:
    runner = CliRunner()
    metrics_file = str(_write_metrics(tmp_path / "gsc.json"))

    result = runner.invoke(
        content_refresh,
        [
            "prioritize",
            "start",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--metrics-file",
            metrics_file,
        ],
    )

    assert result.exit_code == 1
    assert "No published items" in result.output


def test_progress_and_cancel_without_job(tmp_path: Path) -> None:
    runner = CliRunner()
    db = str(tmp_path / "cli.db")

    assert "No prioritization job (status=idle)." in _invoke(
        runner,
        "prioritize",
        "progress",
        "--db-path",
        db,
    )
    assert "No running job. Dropped queued batches: 0" in _invoke(
        runner,
        "prioritize",
        "cancel",
        "--db-path",
        db,
    )
    assert "No stale job found." in _invoke(runner, "prioritize", "sweep", "--db-path", db)


def test_exclude_and_remove_items(tmp_path: Path) -> None:
    runner = CliRunner()
    db = str(tmp_path / "cli.db")
    _invoke(runner, "items", "import", "--db-path", db, str(_write_items(tmp_path / "i.json")))

    assert "Item 2 excluded from display ordering." in _invoke(
        runner,
        "items",
        "exclude",
        "--db-path",
        db,
        "2",
    )
    assert "(excluded)" in _invoke(runner, "items", "list", "--db-path", db)
    assert "Removed item 2: tracked=1" in _invoke(runner, "items", "remove", "--db-path", db, "2")


def test_reconcile_reports_summary(tmp_path: Path) -> None:
    runner = CliRunner()
    db = str(tmp_path / "cli.db")

    output = _invoke(runner, "reconcile", "--db-path", db, "--prune-orphans")

    assert "Reconciled: reset=0 interrupted=0 deleted_drafts=0 untouched=0" in output
    assert "Pruned orphans: tracked=0" in output


def test_invalid_configuration_is_reported(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("CONTENT_REFRESH_BATCH_SIZE", "0")

    result = CliRunner().invoke(
        content_refresh,
        ["prioritize", "progress", "--db-path", str(tmp_path / "cli.db")],
    )

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_malformed_items_file_is_rejected(tmp_path: Path) -> None:
    items_file = tmp_path / "items.json"
    items_file.write_text(json.dumps([{"item_id": 1}]), "utf-8")

    result = CliRunner().invoke(
        content_refresh,
        ["items", "import", "--db-path", str(tmp_path / "cli.db"), str(items_file)],
    )

    assert result.exit_code == 1
    assert "Item #0 is invalid" in result.output
