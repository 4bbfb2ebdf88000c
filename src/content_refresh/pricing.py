"""Token cost estimation for generation calls."""

from __future__ import annotations

import os
from dataclasses import dataclass

from content_refresh.models import TokenUsage

PRICING_ENV = "CONTENT_REFRESH_LLM_PRICING"


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float

    def cost(self, usage: TokenUsage) -> float | None:
        if usage.prompt_tokens is not None and usage.completion_tokens is not None:
            return (
                (usage.prompt_tokens / 1_000_000) * self.input_per_1m
                + (usage.completion_tokens / 1_000_000) * self.output_per_1m
            )
        if usage.total_tokens is not None:
            average = (self.input_per_1m + self.output_per_1m) / 2
            return (usage.total_tokens / 1_000_000) * average
        return None


def estimate_cost_usd(*, agent: str, usage: TokenUsage) -> float | None:
    """Estimate call cost in USD from token usage and configured pricing."""

    pricing = lookup_pricing(agent=agent, model=usage.model or "")
    if pricing is None:
        return None
    return pricing.cost(usage)


def lookup_pricing(*, agent: str, model: str) -> ModelPricing | None:
    mapping = parse_pricing_mapping(os.getenv(PRICING_ENV, ""))
    agent_key = agent.strip().lower()
    for key in ((agent_key, model.strip()), (agent_key, "*"), ("*", "*")):
        pricing = mapping.get(key)
        if pricing is not None:
            return pricing
    return None


def parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `CONTENT_REFRESH_LLM_PRICING`.

    Entries look like `agent:model:input_per_1m:output_per_1m`, separated by `,`.
    `*` matches any agent or model. Malformed or negative rows are ignored.
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    for entry in raw.split(","):
        parts = [part.strip() for part in entry.strip().split(":")]
        if len(parts) != 4:
            continue
        agent, model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        if input_per_1m < 0 or output_per_1m < 0:
            continue
        parsed[(agent.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
