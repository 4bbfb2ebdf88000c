"""Interfaces for the external services the pipelines depend on."""

from __future__ import annotations

from datetime import date
from typing import Protocol

from content_refresh.models import GenerationResult, MetricsWindow


class MetricsSource(Protocol):
    """Search analytics client.

    `fetch_metrics` raises on transport or API failure. A key with no data in
    the window is a valid zero-valued result, not an error.
    """

    def is_authenticated(self) -> bool:
        """Return whether the source can be queried right now."""

    def fetch_metrics(self, key: str, window_start: date, window_end: date) -> MetricsWindow:
        """Fetch aggregated metrics for one key over an inclusive date window."""


class TextGenerator(Protocol):
    """Generation client that turns a prompt into text plus token usage."""

    agent: str

    def generate(self, prompt: str) -> GenerationResult:
        """Submit a prompt and return its text and usage, raising on failure."""
