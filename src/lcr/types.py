"""
Core types for logic-chain research.

This module defines the data model shared by every stage:
- Enums for run status, stream log types, output language and market
- ResearchNode / TopicChain / Investigation for the planned and executed work
- Report (frozen) for the synthesized output
- StreamLog (frozen) for the append-only progress protocol
- TokenUsage for run-level usage accounting
- ResearchState, the full snapshot republished to stream consumers

Every type serializes to the camelCase wire format with to_dict() and
restores with from_dict().
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from uuid6 import uuid7


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "run", "rpt")

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return utc_now()


class Language(str, Enum):
    """Output language for prompts and stream messages."""

    EN = "en"
    CN = "cn"


class ResearchStatus(str, Enum):
    """Orchestrator states. COMPLETED and ERROR are terminal."""

    INITIALIZING = "initializing"
    PLANNING = "planning"
    RESEARCHING = "researching"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ResearchStatus.COMPLETED, ResearchStatus.ERROR)


class LogType(str, Enum):
    """Types of stream log events."""

    PLAN = "plan"
    MISSION_START = "missionStart"
    SEARCH_QUERY = "searchQuery"
    SEARCH_RESULTS = "searchResults"
    ANALYSIS_PROGRESS = "analysisProgress"
    FINAL_REPORT = "finalReport"


class Market(str, Enum):
    """Listing market, detected from the ticker format."""

    US = "US"
    CN = "CN"
    HK = "HK"


_HK_CODE = re.compile(r"^\d{5}$")
_CN_CODE = re.compile(r"^[036]\d{5}$")


def detect_market(ticker: str) -> Market:
    """Detect the listing market of a ticker.

    ``.HK`` suffix or five digits is Hong Kong; six digits starting with
    0, 3 or 6 is mainland China; anything else is treated as US.
    """
    normalized = ticker.strip().upper()
    if normalized.endswith(".HK") or _HK_CODE.match(normalized):
        return Market.HK
    if _CN_CODE.match(normalized):
        return Market.CN
    return Market.US


@dataclass
class ResearchNode:
    """One investigation step inside a topic chain.

    Created during planning with empty findings/reasoning. The node executor
    produces a populated copy via with_results(); the planned node itself is
    never touched, so the recorded plan stays intact.
    """

    id: str
    step_name: str
    intent: str
    questions: list[str] = field(default_factory=list)
    findings: list[str] = field(default_factory=list)
    reasoning: str = ""
    next_logic_step: str | None = None

    @property
    def completed(self) -> bool:
        """A node counts as completed iff it produced at least one finding."""
        return len(self.findings) > 0

    def with_results(self, findings: list[str], reasoning: str) -> ResearchNode:
        """Return the executed version of this node."""
        return replace(self, findings=list(findings), reasoning=reasoning)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stepName": self.step_name,
            "intent": self.intent,
            "questions": list(self.questions),
            "findings": list(self.findings),
            "reasoning": self.reasoning,
            "nextLogicStep": self.next_logic_step,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResearchNode:
        return cls(
            id=data["id"],
            step_name=data.get("stepName", ""),
            intent=data.get("intent", ""),
            questions=list(data.get("questions", [])),
            findings=list(data.get("findings", [])),
            reasoning=data.get("reasoning", ""),
            next_logic_step=data.get("nextLogicStep"),
        )


@dataclass
class TopicChain:
    """Named, ordered sequence of research nodes for one topic."""

    topic: str
    nodes: list[ResearchNode] = field(default_factory=list)

    @property
    def total_nodes(self) -> int:
        return len(self.nodes)

    @property
    def completed_nodes(self) -> int:
        return sum(1 for node in self.nodes if node.completed)

    @property
    def progress(self) -> float:
        """Fraction of nodes completed (0.0 for an empty chain)."""
        if not self.nodes:
            return 0.0
        return self.completed_nodes / self.total_nodes

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "chain": [node.to_dict() for node in self.nodes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TopicChain:
        return cls(
            topic=data.get("topic", ""),
            nodes=[ResearchNode.from_dict(n) for n in data.get("chain", [])],
        )


@dataclass
class Investigation:
    """All topic chains for one ticker. Node counts are always derived."""

    ticker: str
    topic_chains: list[TopicChain] = field(default_factory=list)

    @property
    def total_nodes(self) -> int:
        return sum(chain.total_nodes for chain in self.topic_chains)

    @property
    def completed_nodes(self) -> int:
        return sum(chain.completed_nodes for chain in self.topic_chains)

    @property
    def all_findings(self) -> list[str]:
        return [f for chain in self.topic_chains for node in chain.nodes for f in node.findings]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticker": self.ticker,
            "topicChains": [chain.to_dict() for chain in self.topic_chains],
            "totalNodes": self.total_nodes,
            "completedNodes": self.completed_nodes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Investigation:
        # totalNodes/completedNodes on the wire are ignored: recomputed from chains
        return cls(
            ticker=data.get("ticker", ""),
            topic_chains=[TopicChain.from_dict(c) for c in data.get("topicChains", [])],
        )


@dataclass(frozen=True)
class CompetitorEntry:
    """One row of the competitor matrix."""

    name: str
    core_difference: str
    market_cap: str | None = None
    resource_quality: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "marketCap": self.market_cap,
            "coreDifference": self.core_difference,
            "resourceQuality": self.resource_quality,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompetitorEntry:
        return cls(
            name=data.get("name", ""),
            core_difference=data.get("coreDifference", ""),
            market_cap=data.get("marketCap"),
            resource_quality=data.get("resourceQuality"),
        )


@dataclass(frozen=True)
class FinancialReality:
    """Financial section of the report; every field optional."""

    cash_burn_rate: str | None = None
    capex_cycle: str | None = None
    revenue_trend: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cashBurnRate": self.cash_burn_rate,
            "capexCycle": self.capex_cycle,
            "revenueTrend": self.revenue_trend,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FinancialReality:
        return cls(
            cash_burn_rate=data.get("cashBurnRate"),
            capex_cycle=data.get("capexCycle"),
            revenue_trend=data.get("revenueTrend"),
        )


@dataclass(frozen=True)
class Report:
    """Synthesized investment report. Immutable once created."""

    narrative_arc: str
    competitor_matrix: tuple[CompetitorEntry, ...]
    financial_reality: FinancialReality
    marginal_changes: str
    verdict: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "narrativeArc": self.narrative_arc,
            "competitorMatrix": [c.to_dict() for c in self.competitor_matrix],
            "financialReality": self.financial_reality.to_dict(),
            "marginalChanges": self.marginal_changes,
            "verdict": self.verdict,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Report:
        return cls(
            narrative_arc=data.get("narrativeArc", ""),
            competitor_matrix=tuple(
                CompetitorEntry.from_dict(c) for c in data.get("competitorMatrix", [])
            ),
            financial_reality=FinancialReality.from_dict(data.get("financialReality") or {}),
            marginal_changes=data.get("marginalChanges", ""),
            verdict=data.get("verdict", ""),
        )


@dataclass(frozen=True)
class StreamLog:
    """One timestamped progress event."""

    type: LogType
    message: str
    data: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.type.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.data is not None:
            result["data"] = self.data
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamLog:
        return cls(
            type=LogType(data["type"]),
            message=data.get("message", ""),
            data=data.get("data"),
            timestamp=_parse_timestamp(data.get("timestamp")),
        )


@dataclass
class TokenUsage:
    """Token/cost accumulator. Only ever grows."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: TokenUsage) -> TokenUsage:
        """Accumulate another usage delta in place and return self."""
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cost += other.cost
        return self

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cost=self.cost + other.cost,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cost": round(self.cost, 6),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenUsage:
        return cls(
            input_tokens=int(data.get("inputTokens", 0)),
            output_tokens=int(data.get("outputTokens", 0)),
            cost=float(data.get("cost", 0.0)),
        )


@dataclass(frozen=True)
class MarketQuote:
    """Point-in-time market quote."""

    ticker: str
    price: float
    change: float
    change_percent: float
    name: str = ""
    market_cap: float | None = None
    volume: float | None = None
    currency: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticker": self.ticker,
            "name": self.name,
            "price": self.price,
            "change": self.change,
            "changePercent": self.change_percent,
            "marketCap": self.market_cap,
            "volume": self.volume,
            "currency": self.currency,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SearchResult:
    """A single web search hit."""

    title: str
    snippet: str
    link: str
    content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "snippet": self.snippet,
            "content": self.content,
            "link": self.link,
        }


@dataclass
class NodeExecutionResult:
    """Outcome of executing one research node."""

    node_id: str
    findings: list[str]
    reasoning: str
    search_results_used: list[SearchResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.findings) > 0


@dataclass
class ResearchState:
    """Full orchestrator snapshot published on every update.

    completed_chains is appended to by whichever chain finishes; it is
    never replaced while a run is in progress.
    """

    status: ResearchStatus = ResearchStatus.INITIALIZING
    plan: list[TopicChain] | None = None
    completed_chains: list[TopicChain] = field(default_factory=list)
    logs: list[StreamLog] = field(default_factory=list)
    report: Report | None = None
    error: str | None = None
    total_tokens: int | None = None
    report_id: str | None = None
    investigation: Investigation | None = None
    usage: TokenUsage | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": self.status.value,
            "completedChains": [c.to_dict() for c in self.completed_chains],
            "logs": [log.to_dict() for log in self.logs],
        }
        if self.plan is not None:
            result["plan"] = [c.to_dict() for c in self.plan]
        if self.report is not None:
            result["report"] = self.report.to_dict()
        if self.error is not None:
            result["error"] = self.error
        if self.total_tokens is not None:
            result["totalTokens"] = self.total_tokens
        if self.report_id is not None:
            result["reportId"] = self.report_id
        if self.investigation is not None:
            result["investigation"] = self.investigation.to_dict()
        if self.usage is not None:
            result["usage"] = self.usage.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResearchState:
        plan = data.get("plan")
        report = data.get("report")
        investigation = data.get("investigation")
        usage = data.get("usage")
        return cls(
            status=ResearchStatus(data.get("status", ResearchStatus.INITIALIZING.value)),
            plan=[TopicChain.from_dict(c) for c in plan] if plan is not None else None,
            completed_chains=[TopicChain.from_dict(c) for c in data.get("completedChains", [])],
            logs=[StreamLog.from_dict(log) for log in data.get("logs", [])],
            report=Report.from_dict(report) if report is not None else None,
            error=data.get("error"),
            total_tokens=data.get("totalTokens"),
            report_id=data.get("reportId"),
            investigation=Investigation.from_dict(investigation) if investigation else None,
            usage=TokenUsage.from_dict(usage) if usage else None,
        )
