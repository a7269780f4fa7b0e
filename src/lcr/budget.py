"""
Token and cost accounting.

Every generation call reports its usage; each stage returns the sum of its
calls as a TokenUsage delta, and the orchestrator folds those deltas into a
UsageTracker. Totals only ever grow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import orjson

from lcr.logging import get_logger
from lcr.types import TokenUsage

logger = get_logger(__name__)


# Cost per million tokens, by provider.
# Format: (input_cost_per_million, output_cost_per_million)
PROVIDER_COSTS: dict[str, tuple[float, float]] = {
    "gemini": (1.25, 5.00),
    "deepseek": (0.14, 0.28),
    "qwen": (0.14, 0.28),
}


def get_provider_cost(provider: str) -> tuple[float, float]:
    """Get cost per million tokens for a provider.

    Args:
        provider: Provider name (gemini, deepseek, qwen).

    Returns:
        Tuple of (input_cost_per_million, output_cost_per_million).
    """
    if provider in PROVIDER_COSTS:
        return PROVIDER_COSTS[provider]

    logger.warning("Unknown provider cost, using gemini pricing", provider=provider)
    return PROVIDER_COSTS["gemini"]


def calculate_cost(provider: str, input_tokens: int, output_tokens: int) -> float:
    """Calculate cost in USD for token usage.

    Args:
        provider: Provider name.
        input_tokens: Number of input tokens.
        output_tokens: Number of output tokens.

    Returns:
        Cost in USD.
    """
    input_cost_per_m, output_cost_per_m = get_provider_cost(provider)
    return (input_tokens / 1_000_000) * input_cost_per_m + (
        output_tokens / 1_000_000
    ) * output_cost_per_m


@dataclass
class UsageRecord:
    """Usage delta reported by one pipeline stage."""

    stage: str
    input_tokens: int
    output_tokens: int
    cost_usd: float


@dataclass
class UsageTracker:
    """Accumulates stage usage deltas across a run.

    Tracks by stage (plan, chain:<topic>, synthesize) and keeps every
    record so the run total can be audited against individual deltas.
    """

    output_dir: Path | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    by_stage: dict[str, TokenUsage] = field(default_factory=dict)
    records: list[UsageRecord] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens

    def record(self, stage: str, delta: TokenUsage) -> None:
        """Fold a stage's usage delta into the run totals.

        Args:
            stage: Stage label.
            delta: Usage reported by the stage.
        """
        self.usage.add(delta)
        self.by_stage.setdefault(stage, TokenUsage()).add(delta)
        self.records.append(
            UsageRecord(
                stage=stage,
                input_tokens=delta.input_tokens,
                output_tokens=delta.output_tokens,
                cost_usd=delta.cost,
            )
        )

        logger.debug(
            "Recorded usage",
            stage=stage,
            input_tokens=delta.input_tokens,
            output_tokens=delta.output_tokens,
            cost=f"${delta.cost:.4f}",
            total=f"${self.usage.cost:.4f}",
        )

        if self.output_dir:
            self._save()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dict for JSON."""
        return {
            "total": self.usage.to_dict(),
            "by_stage": {stage: u.to_dict() for stage, u in self.by_stage.items()},
            "records": [
                {
                    "stage": r.stage,
                    "input_tokens": r.input_tokens,
                    "output_tokens": r.output_tokens,
                    "cost_usd": r.cost_usd,
                }
                for r in self.records
            ],
        }

    def _save(self) -> None:
        if not self.output_dir:
            return

        self.output_dir.mkdir(parents=True, exist_ok=True)
        with open(self.output_dir / "costs.json", "wb") as f:
            f.write(orjson.dumps(self.to_dict(), option=orjson.OPT_INDENT_2))
