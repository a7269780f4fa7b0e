"""
Extract-and-validate helpers for semi-structured model output.

Models return JSON embedded in free text. Every parser here returns a tagged
Parsed result instead of raising, and each call site picks its own default:
- planning falls back to a predefined chain,
- fact extraction falls back to zero findings,
- synthesis falls back to a summary report.

Malformed-output exceptions never leave this module.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterator, TypeVar

import orjson
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from lcr.types import (
    CompetitorEntry,
    FinancialReality,
    Language,
    Report,
    ResearchNode,
    TopicChain,
)

T = TypeVar("T")


@dataclass(frozen=True)
class Parsed(Generic[T]):
    """Either a parsed value (ok) or a parse error message."""

    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> Parsed[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> Parsed[T]:
        return cls(error=error)

    def unwrap_or(self, default: T) -> T:
        if self.ok and self.value is not None:
            return self.value
        return default


def iter_balanced_spans(text: str, open_char: str = "{", close_char: str = "}") -> Iterator[str]:
    """Yield every top-level balanced open/close span in text, in order.

    Brackets inside JSON string literals are ignored. An opening bracket that
    never closes is skipped and scanning resumes at the next one.
    """
    start = text.find(open_char)
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = -1
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == open_char:
                depth += 1
            elif ch == close_char:
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end == -1:
            start = text.find(open_char, start + 1)
            continue
        yield text[start : end + 1]
        start = text.find(open_char, end + 1)


def find_balanced_span(text: str, open_char: str = "{", close_char: str = "}") -> str | None:
    """Return the first balanced open/close span in text.

    Args:
        text: Raw model output.
        open_char: Opening bracket.
        close_char: Matching closing bracket.

    Returns:
        The span including both brackets, or None.
    """
    return next(iter_balanced_spans(text, open_char, close_char), None)


def _candidate_spans(text: str, open_char: str, close_char: str) -> list[str]:
    """First balanced span, then the greedy first-open..last-close span, then later balanced spans."""
    balanced = list(iter_balanced_spans(text, open_char, close_char))
    candidates = balanced[:1]
    start = text.find(open_char)
    end = text.rfind(close_char)
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    candidates.extend(balanced[1:])

    unique: list[str] = []
    for span in candidates:
        if span not in unique:
            unique.append(span)
    return unique


def extract_json_object(text: str) -> Parsed[dict[str, Any]]:
    """Locate and parse the first JSON object embedded in text."""
    if not text:
        return Parsed.failure("empty response")

    candidates = _candidate_spans(text, "{", "}")
    if not candidates:
        return Parsed.failure("no JSON object found")

    last_error = ""
    for span in candidates:
        try:
            data = orjson.loads(span)
        except orjson.JSONDecodeError as e:
            last_error = str(e)
            continue
        if isinstance(data, dict):
            return Parsed.success(data)
        last_error = f"expected object, got {type(data).__name__}"
    return Parsed.failure(f"invalid JSON object: {last_error}")


def extract_json_array(
    text: str,
    accept: Callable[[list[Any]], bool] | None = None,
) -> Parsed[list[Any]]:
    """Locate and parse the first acceptable JSON array embedded in text.

    Args:
        text: Raw model output.
        accept: Optional check on a parsed array. Rejected arrays (a ``[1]``
            citation marker in prose, say) are skipped and the next candidate
            span is tried.

    Returns:
        The parsed array, or a failure naming the last problem seen.
    """
    if not text:
        return Parsed.failure("empty response")

    candidates = _candidate_spans(text, "[", "]")
    if not candidates:
        return Parsed.failure("no JSON array found")

    last_error = ""
    for span in candidates:
        try:
            data = orjson.loads(span)
        except orjson.JSONDecodeError as e:
            last_error = str(e)
            continue
        if not isinstance(data, list):
            last_error = f"expected array, got {type(data).__name__}"
            continue
        if accept is not None and not accept(data):
            last_error = "array rejected"
            continue
        return Parsed.success(data)
    return Parsed.failure(f"invalid JSON array: {last_error}")


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def _str_list(value: Any) -> list[str]:
    """Non-blank string items, stripped. Numbers and nested values are dropped."""
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def parse_topic_chains(text: str) -> Parsed[list[TopicChain]]:
    """Parse planner output into topic chains with stable node ids.

    Node ids are ``topic-{topicIndex+1}-node-{nodeIndex+1}``; missing names
    get positional defaults. Topics without any step are dropped.
    """
    parsed = extract_json_object(text)
    if not parsed.ok or parsed.value is None:
        return Parsed.failure(parsed.error or "no plan")

    topics = parsed.value.get("topics")
    if not isinstance(topics, list) or not topics:
        return Parsed.failure("missing 'topics' list")

    chains: list[TopicChain] = []
    for topic_index, topic_data in enumerate(topics):
        if not isinstance(topic_data, dict):
            continue
        raw_nodes = topic_data.get("chain")
        if not isinstance(raw_nodes, list):
            continue

        nodes: list[ResearchNode] = []
        for node_index, node_data in enumerate(raw_nodes):
            if not isinstance(node_data, dict):
                continue
            next_step = node_data.get("next_logic_step") or node_data.get("nextLogicStep")
            nodes.append(
                ResearchNode(
                    id=f"topic-{topic_index + 1}-node-{node_index + 1}",
                    step_name=str(
                        node_data.get("step_name") or node_data.get("stepName") or f"Step {node_index + 1}"
                    ),
                    intent=str(node_data.get("intent") or ""),
                    questions=_str_list(node_data.get("questions")),
                    next_logic_step=str(next_step) if next_step else None,
                )
            )

        if nodes:
            chains.append(
                TopicChain(
                    topic=str(topic_data.get("topic") or f"Topic {topic_index + 1}"),
                    nodes=nodes,
                )
            )

    if not chains:
        return Parsed.failure("plan contained no usable topics")
    return Parsed.success(chains)


def fallback_topic_chains(ticker: str) -> list[TopicChain]:
    """Single predefined chain used whenever planning output is unusable."""
    return [
        TopicChain(
            topic="Competitive Analysis",
            nodes=[
                ResearchNode(
                    id="topic-1-node-1",
                    step_name="Step 1: Identify Competitors",
                    intent="Identify direct competitors to understand market positioning",
                    questions=[f"{ticker} competitors", f"{ticker} market share"],
                    next_logic_step="Compare competitive advantages",
                )
            ],
        )
    ]


# ---------------------------------------------------------------------------
# Fact extraction
# ---------------------------------------------------------------------------


def _looks_like_facts(items: list[Any]) -> bool:
    # An empty list is a valid "nothing found"; a list without any string is
    # a citation marker or other bracketed number, not a fact list.
    return not items or any(isinstance(item, str) for item in items)


def parse_findings(text: str) -> Parsed[list[str]]:
    """Parse a JSON array of fact strings.

    Arrays with no string items are skipped in favour of a later array in the
    same text. Blank strings, numbers and nested values are dropped.
    """
    parsed = extract_json_array(text, accept=_looks_like_facts)
    if not parsed.ok or parsed.value is None:
        return Parsed.failure(parsed.error or "no findings")
    return Parsed.success(_str_list(parsed.value))


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


def _to_optional_str(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return value


class CompetitorSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    core_difference: str = Field(validation_alias=AliasChoices("core_difference", "coreDifference"))
    market_cap: str | None = Field(default=None, validation_alias=AliasChoices("market_cap", "marketCap"))
    resource_quality: str | None = Field(
        default=None, validation_alias=AliasChoices("resource_quality", "resourceQuality")
    )

    @field_validator("market_cap", "resource_quality", mode="before")
    @classmethod
    def coerce_scalars(cls, v: Any) -> Any:
        return _to_optional_str(v)


class FinancialRealitySchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cash_burn_rate: str | None = Field(
        default=None, validation_alias=AliasChoices("cash_burn_rate", "cashBurnRate")
    )
    capex_cycle: str | None = Field(default=None, validation_alias=AliasChoices("capex_cycle", "capexCycle"))
    revenue_trend: str | None = Field(
        default=None, validation_alias=AliasChoices("revenue_trend", "revenueTrend")
    )

    @field_validator("cash_burn_rate", "capex_cycle", "revenue_trend", mode="before")
    @classmethod
    def coerce_scalars(cls, v: Any) -> Any:
        return _to_optional_str(v)


class ReportSchema(BaseModel):
    """Validation schema for the synthesizer's JSON output."""

    model_config = ConfigDict(extra="ignore")

    narrative_arc: str = Field(validation_alias=AliasChoices("narrative_arc", "narrativeArc"))
    competitor_matrix: list[CompetitorSchema] = Field(
        validation_alias=AliasChoices("competitor_matrix", "competitorMatrix")
    )
    financial_reality: FinancialRealitySchema = Field(
        validation_alias=AliasChoices("financial_reality", "financialReality")
    )
    marginal_changes: str = Field(validation_alias=AliasChoices("marginal_changes", "marginalChanges"))
    verdict: str

    def to_report(self) -> Report:
        return Report(
            narrative_arc=self.narrative_arc,
            competitor_matrix=tuple(
                CompetitorEntry(
                    name=c.name,
                    core_difference=c.core_difference,
                    market_cap=c.market_cap,
                    resource_quality=c.resource_quality,
                )
                for c in self.competitor_matrix
            ),
            financial_reality=FinancialReality(
                cash_burn_rate=self.financial_reality.cash_burn_rate,
                capex_cycle=self.financial_reality.capex_cycle,
                revenue_trend=self.financial_reality.revenue_trend,
            ),
            marginal_changes=self.marginal_changes,
            verdict=self.verdict,
        )


def parse_report(text: str) -> Parsed[Report]:
    """Parse and validate synthesizer output into a Report."""
    parsed = extract_json_object(text)
    if not parsed.ok or parsed.value is None:
        return Parsed.failure(parsed.error or "no report")
    try:
        schema = ReportSchema.model_validate(parsed.value)
    except ValidationError as e:
        return Parsed.failure(f"report validation failed: {e.error_count()} error(s)")
    return Parsed.success(schema.to_report())


def fallback_report(ticker: str, fact_count: int, chain_count: int, language: Language) -> Report:
    """Deterministic report used when synthesis output is unusable."""
    if language == Language.CN:
        narrative = f"{ticker} 的分析基于 {fact_count} 个已发现的事实。"
        verdict = f"{ticker} 分析：在 {chain_count} 个研究主题中发现 {fact_count} 个事实。"
    else:
        narrative = f"Analysis for {ticker} based on {fact_count} facts found."
        verdict = f"Analysis for {ticker}: Found {fact_count} facts across {chain_count} research topics."
    return Report(
        narrative_arc=narrative,
        competitor_matrix=(),
        financial_reality=FinancialReality(cash_burn_rate="", capex_cycle="", revenue_trend=""),
        marginal_changes="",
        verdict=verdict,
    )
