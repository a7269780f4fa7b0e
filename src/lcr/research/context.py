"""
Per-run context shared by the research stages.
"""

from __future__ import annotations

from dataclasses import dataclass

from lcr.gates import ResearchGates
from lcr.llm.base import GenerationResult, TextGenerator
from lcr.prompts import message
from lcr.retrieval.search_provider import SearchProvider
from lcr.stream import LogCollector
from lcr.types import Language, LogType, StreamLog


@dataclass
class ResearchContext:
    """Capabilities, gates and log sink for one research run.

    Attributes:
        ticker: Ticker under research.
        language: Output language for prompts and stream messages.
        generator: Text-generation capability.
        search: Web search capability.
        gates: Call and chain gates for this run.
        collector: Stream log sink.
        fast_model: Model override for fact extraction and reasoning.
        search_max_results: Results requested per search question.
    """

    ticker: str
    language: Language
    generator: TextGenerator
    search: SearchProvider
    gates: ResearchGates
    collector: LogCollector
    fast_model: str | None = None
    search_max_results: int = 5

    def emit(self, type: LogType, key: str, data: dict | None = None, **kwargs: object) -> StreamLog:
        """Append a localized stream log."""
        return self.collector.add(type, message(self.language, key, **kwargs), data)

    async def generate(self, prompt: str, fast: bool = False) -> GenerationResult:
        """Run one generation call inside a call-gate slot."""
        override = self.fast_model if fast else None
        async with self.gates.call.slot():
            return await self.generator.generate(prompt, model_override=override)
