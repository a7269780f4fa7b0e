"""
Pytest configuration and fixtures for logic-chain research tests.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import patch

import orjson
import pytest

from lcr.config import Settings, clear_settings_cache
from lcr.exceptions import GenerationError, PersistenceError, QuoteError, SearchError
from lcr.gates import ResearchGates
from lcr.llm.base import GenerationResult
from lcr.research.context import ResearchContext
from lcr.stream import LogCollector
from lcr.types import Investigation, Language, MarketQuote, Report, SearchResult, TokenUsage

PLANNING_MARKER = "create a comprehensive research investigation structure"
EXTRACTION_MARKER = "You are a fact extraction specialist"
REASONING_MARKER = "Based on these facts, explain how they answer the intent"
SYNTHESIS_MARKER = "Synthesize all research findings"
RESOLVE_MARKER = "You are a financial entity resolver"


def prompt_kind(prompt: str) -> str:
    """Classify a prompt by the builder that produced it."""
    if PLANNING_MARKER in prompt:
        return "plan"
    if EXTRACTION_MARKER in prompt:
        return "extract"
    if REASONING_MARKER in prompt:
        return "reason"
    if SYNTHESIS_MARKER in prompt:
        return "synthesize"
    if RESOLVE_MARKER in prompt:
        return "resolve"
    return "unknown"


def make_plan_json(topics: int = 1, nodes: int = 2, questions: int = 1) -> str:
    """Planner output with the given shape."""
    return orjson.dumps(
        {
            "topics": [
                {
                    "topic": f"Topic {t + 1}",
                    "chain": [
                        {
                            "step_name": f"Step {n + 1}",
                            "intent": f"Intent {t + 1}.{n + 1}",
                            "questions": [f"question {t + 1}.{n + 1}.{q + 1}" for q in range(questions)],
                            "next_logic_step": "Continue",
                        }
                        for n in range(nodes)
                    ],
                }
                for t in range(topics)
            ]
        }
    ).decode()


def make_report_json(verdict: str = "Apple is executing well.") -> str:
    return orjson.dumps(
        {
            "narrative_arc": "Services growth offsets hardware maturity.",
            "competitor_matrix": [
                {"name": "Samsung", "market_cap": "$300B", "core_difference": "Android hardware"}
            ],
            "financial_reality": {
                "cash_burn_rate": "None, FCF positive",
                "capex_cycle": "Stable",
                "revenue_trend": "Q3 revenue $90B",
            },
            "marginal_changes": "AI features announced in June.",
            "verdict": verdict,
        }
    ).decode()


class ScriptedGenerator:
    """Fake TextGenerator answering by prompt kind.

    Records every call as (kind, model_override) and the peak number of
    concurrent calls.
    """

    provider = "fake"

    def __init__(
        self,
        plan: str | None = None,
        facts: str = '["Apple Q3 revenue was $90B"]',
        reasoning: str = "Revenue grew.",
        report: str | None = None,
        resolve: str = "[]",
        input_tokens: int = 100,
        output_tokens: int = 50,
        delay: float = 0.0,
        fail_on: set[str] | None = None,
    ) -> None:
        self.responses: dict[str, str | Callable[[str], str]] = {
            "plan": plan if plan is not None else make_plan_json(),
            "extract": facts,
            "reason": reasoning,
            "synthesize": report if report is not None else make_report_json(),
            "resolve": resolve,
            "unknown": "",
        }
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.delay = delay
        self.fail_on = fail_on or set()
        self.calls: list[tuple[str, str | None]] = []
        self.prompts: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def total_tokens(self) -> int:
        """Tokens reported across all successful calls."""
        return sum(1 for kind, _ in self.calls if kind not in self.fail_on) * (
            self.input_tokens + self.output_tokens
        )

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.calls]

    async def generate(self, prompt: str, model_override: str | None = None) -> GenerationResult:
        kind = prompt_kind(prompt)
        self.calls.append((kind, model_override))
        self.prompts.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            if kind in self.fail_on:
                raise GenerationError("scripted failure", context={"provider": "fake", "kind": kind})
            response = self.responses[kind]
            text = response(prompt) if callable(response) else response
        finally:
            self.in_flight -= 1
        return GenerationResult(
            text=text,
            usage=TokenUsage(input_tokens=self.input_tokens, output_tokens=self.output_tokens, cost=0.001),
            provider="fake",
            model=model_override or "fake-model",
        )


class FakeSearch:
    """Fake SearchProvider with per-query failures and in-flight tracking."""

    def __init__(
        self,
        content: str = "Apple revenue $90B Q3",
        fail_queries: set[str] | None = None,
        empty_queries: set[str] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.content = content
        self.fail_queries = fail_queries or set()
        self.empty_queries = empty_queries or set()
        self.delay = delay
        self.queries: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def search(self, query: str, max_results: int = 5) -> list[SearchResult]:
        self.queries.append(query)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            if query in self.fail_queries:
                raise SearchError("search failed", context={"query": query})
            if query in self.empty_queries:
                return []
            return [
                SearchResult(
                    title=f"Result for {query}",
                    snippet=self.content[:200],
                    link="https://example.com/a",
                    content=self.content,
                )
            ]
        finally:
            self.in_flight -= 1


class FakeQuotes:
    """Fake QuoteProvider; raises QuoteError when fail is set."""

    def __init__(self, fail: bool = False, price: float = 190.5) -> None:
        self.fail = fail
        self.price = price
        self.requested: list[str] = []

    async def get_quote(self, ticker: str) -> MarketQuote:
        self.requested.append(ticker)
        if self.fail:
            raise QuoteError("Failed to fetch market quote", context={"ticker": ticker})
        return MarketQuote(
            ticker=ticker,
            price=self.price,
            change=1.5,
            change_percent=0.79,
            name="Apple Inc.",
            market_cap=2.9e12,
            volume=5.1e7,
            currency="USD",
        )


class FakeStore:
    """In-memory ReportRepository."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.saved: list[dict] = []

    async def save(
        self,
        ticker: str,
        language: Language,
        report: Report,
        investigation: Investigation,
        total_tokens: int,
    ) -> str:
        if self.fail:
            raise PersistenceError("database is locked")
        self.saved.append(
            {
                "ticker": ticker,
                "language": language,
                "report": report,
                "investigation": investigation,
                "total_tokens": total_tokens,
            }
        )
        return f"rpt_{len(self.saved)}"


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing.

    Sets up fake API keys and required configuration.
    """
    env_vars = {
        "GEMINI_API_KEY": "test-gemini-key-1234567890",
        "DEEPSEEK_API_KEY": "",
        "QWEN_API_KEY": "",
        "TAVILY_API_KEY": "tvly-test-key-1234567890",
        "CALL_CONCURRENCY": "5",
        "CHAIN_CONCURRENCY": "2",
        "OUTPUT_DIR": "test_output",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str], temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration.

    Uses temp_dir for the database and output directories.
    """
    with patch.dict(
        os.environ,
        {
            "DATABASE_PATH": str(temp_dir / "data" / "reports.db"),
            "OUTPUT_DIR": str(temp_dir / "output"),
        },
    ):
        clear_settings_cache()
        from lcr.config import get_settings

        settings = get_settings()
        settings.ensure_directories()
        yield settings
        clear_settings_cache()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def search() -> FakeSearch:
    return FakeSearch()


@pytest.fixture
def quotes() -> FakeQuotes:
    return FakeQuotes()


@pytest.fixture
def make_context() -> Callable[..., ResearchContext]:
    """Factory for a ResearchContext over fake capabilities."""

    def factory(
        generator: ScriptedGenerator | None = None,
        search: FakeSearch | None = None,
        ticker: str = "AAPL",
        language: Language = Language.EN,
        call_limit: int = 5,
        chain_limit: int = 2,
        fast_model: str | None = None,
    ) -> ResearchContext:
        return ResearchContext(
            ticker=ticker,
            language=language,
            generator=generator or ScriptedGenerator(),
            search=search or FakeSearch(),
            gates=ResearchGates(call_limit=call_limit, chain_limit=chain_limit),
            collector=LogCollector(),
            fast_model=fast_model,
        )

    return factory


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
