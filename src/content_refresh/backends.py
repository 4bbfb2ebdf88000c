"""Concrete metrics and generation adapters used by the CLI."""

from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
from datetime import date
from pathlib import Path
from typing import Any
from uuid import uuid4

from content_refresh.errors import GenerationError, MetricsFetchError
from content_refresh.models import GenerationResult, MetricsWindow, TokenUsage

logger = logging.getLogger(__name__)

_PROMPT_TOKENS = re.compile(r"(?:prompt|input)[_ ]tokens?\"?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_COMPLETION_TOKENS = re.compile(
    r"(?:completion|output)[_ ]tokens?\"?\s*[:=]\s*([\d,]+)",
    re.IGNORECASE,
)
_TOTAL_TOKENS = re.compile(r"total[_ ]tokens?\"?\s*[:=]\s*([\d,]+)", re.IGNORECASE)


class JsonFileMetricsSource:
    """Metrics source backed by a daily-rows export file.

    File layout::

        {"authenticated": true,
         "rows": {"<url>": [{"date": "2026-09-01", "clicks": 3,
                             "impressions": 120, "position": 7.5}]}}
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._payload: dict[str, Any] | None = None

    def is_authenticated(self) -> bool:
        if not self.path.exists():
            return False
        try:
            payload = self._load()
        except MetricsFetchError:
            return False
        return bool(payload.get("authenticated", True))

    def fetch_metrics(self, key: str, window_start: date, window_end: date) -> MetricsWindow:
        payload = self._load()
        rows = payload.get("rows", {}).get(key, [])
        clicks = 0
        impressions = 0
        weighted_position = 0.0
        for row in rows:
            try:
                row_date = date.fromisoformat(str(row["date"]))
            except (KeyError, ValueError) as error:
                raise MetricsFetchError(f"Malformed metrics row for {key}: {row!r}") from error
            if row_date < window_start or row_date > window_end:
                continue
            row_impressions = int(row.get("impressions", 0))
            clicks += int(row.get("clicks", 0))
            impressions += row_impressions
            weighted_position += float(row.get("position", 0.0)) * row_impressions
        if impressions == 0:
            return MetricsWindow(clicks=clicks)
        return MetricsWindow(
            clicks=clicks,
            impressions=impressions,
            ctr=clicks / impressions,
            position=weighted_position / impressions,
        )

    def _load(self) -> dict[str, Any]:
        if self._payload is not None:
            return self._payload
        try:
            parsed = json.loads(self.path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise MetricsFetchError(f"Cannot read metrics file {self.path}: {error}") from error
        if not isinstance(parsed, dict):
            raise MetricsFetchError(f"Metrics file {self.path} must contain a JSON object.")
        self._payload = parsed
        return parsed


class CommandTextGenerator:
    """Run a CLI model command and treat its stdout as the generated text.

    The command template must contain `{prompt}` or `{prompt_file}`; `{model}` is
    optional. Token usage is read from usage markers on stderr when present.
    """

    def __init__(
        self,
        *,
        command_template: str,
        agent: str,
        model: str,
        timeout_seconds: int = 600,
        workdir: Path | None = None,
    ) -> None:
        self.command_template = command_template
        self.agent = agent
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.workdir = workdir or Path(".content_refresh_prompts")

    def generate(self, prompt: str) -> GenerationResult:
        self.workdir.mkdir(parents=True, exist_ok=True)
        prompt_file = self.workdir / f"prompt-{uuid4().hex}.txt"
        prompt_file.write_text(prompt, "utf-8")
        argv = _build_argv(
            command_template=self.command_template,
            model=self.model,
            prompt=prompt,
            prompt_file=prompt_file,
        )
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise GenerationError(f"Generator command not found: {argv[0]}") from error
        except subprocess.TimeoutExpired as error:
            raise GenerationError(
                f"Generator timed out after {self.timeout_seconds}s.",
                transient=True,
            ) from error
        finally:
            prompt_file.unlink(missing_ok=True)

        if completed.returncode != 0:
            stderr_preview = completed.stderr.strip()[:500]
            raise GenerationError(
                f"Generator exited with code {completed.returncode}: {stderr_preview}",
                transient=completed.returncode in {137, 143},
            )
        text = completed.stdout.strip()
        if not text:
            raise GenerationError("Generator returned an empty response.")
        return GenerationResult(
            text=text,
            usage=extract_usage(completed.stderr, model=self.model),
        )


class EchoTextGenerator:
    """Deterministic local generator for demos and tests.

    Reads the `TASK:` and `ITEM:` lines of the prompt and answers with a
    well-formed analysis or rewrite payload.
    """

    agent = "echo"

    def __init__(self, model: str = "echo") -> None:
        self.model = model

    def generate(self, prompt: str) -> GenerationResult:
        task = _prompt_field(prompt, "TASK") or "analysis"
        item = _prompt_json(prompt, "ITEM")
        title = str(item.get("title") or "Untitled")
        if task == "draft":
            content = str(item.get("content") or "")
            payload: dict[str, Any] = {
                "title": title,
                "meta_title": title,
                "meta_description": str(item.get("excerpt") or title)[:155],
                "excerpt": str(item.get("excerpt") or ""),
                "content": f"{content}\n<p>Reviewed and refreshed for accuracy.</p>".strip(),
                "changes_made": ["Added a freshness note"],
                "seo_improvements": [],
                "content_updates": ["Appended review note"],
                "addressed_issues": [],
                "update_summary": "Light refresh.",
            }
        else:
            payload = {
                "user_experience": {"issues": []},
                "factual_updates": [f"Verify facts in '{title}'"],
                "search_optimization": ["Refresh meta description"],
                "ai_visibility": {"issues": [], "opportunities": []},
                "summary": f"Echo analysis for {title}.",
            }
        text = json.dumps(payload, ensure_ascii=False)
        prompt_tokens = len(prompt.split())
        completion_tokens = len(text.split())
        return GenerationResult(
            text=text,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
                model=self.model,
            ),
        )


def extract_usage(text: str, *, model: str | None) -> TokenUsage:
    """Best-effort token usage from `prompt_tokens: N`-style markers."""

    prompt = _extract_int(_PROMPT_TOKENS, text)
    completion = _extract_int(_COMPLETION_TOKENS, text)
    total = _extract_int(_TOTAL_TOKENS, text)
    if total is None:
        known = [value for value in (prompt, completion) if value is not None]
        total = sum(known) if known else None
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        model=model,
    )


def _build_argv(*, command_template: str, model: str, prompt: str, prompt_file: Path) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise GenerationError("Generator command template is empty.")
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except KeyError as error:
        raise GenerationError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise GenerationError("Generator command template rendered an empty command.")
    return argv


def _prompt_field(prompt: str, name: str) -> str | None:
    prefix = f"{name}:"
    for line in prompt.splitlines():
        if line.startswith(prefix):
            return line[len(prefix) :].strip()
    return None


def _prompt_json(prompt: str, name: str) -> dict[str, Any]:
    raw = _prompt_field(prompt, name)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Prompt field %s is not valid JSON.", name)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    return int(raw) if raw.isdigit() else None
