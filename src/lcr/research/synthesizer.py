"""
Synthesizer: turns executed chains and a quote into the final Report.
"""

from __future__ import annotations

from lcr.extraction import fallback_report, parse_report
from lcr.logging import get_logger
from lcr.prompts import build_synthesis_prompt
from lcr.research.context import ResearchContext
from lcr.types import LogType, MarketQuote, Report, TokenUsage, TopicChain

logger = get_logger(__name__)


async def synthesize(
    ctx: ResearchContext,
    chains: list[TopicChain],
    quote: MarketQuote,
) -> tuple[Report, TokenUsage]:
    """Synthesize the report.

    Malformed output yields the deterministic fallback report.

    Args:
        ctx: Research context.
        chains: Executed chains.
        quote: Market quote for the ticker.

    Returns:
        Tuple of (report, usage of the synthesis call).

    Raises:
        GenerationError: If the synthesis call itself fails.
    """
    ctx.emit(LogType.ANALYSIS_PROGRESS, "synthesizing")

    fact_count = sum(len(node.findings) for chain in chains for node in chain.nodes)
    result = await ctx.generate(build_synthesis_prompt(ctx.ticker, chains, quote, ctx.language))

    parsed = parse_report(result.text)
    if parsed.ok and parsed.value is not None:
        report = parsed.value
    else:
        logger.warning("Synthesis output unusable, using fallback report", reason=parsed.error)
        report = fallback_report(ctx.ticker, fact_count, len(chains), ctx.language)

    ctx.emit(
        LogType.FINAL_REPORT,
        "report_ready",
        data={"report": report.to_dict(), "fallback": not parsed.ok},
        facts=fact_count,
    )
    return report, result.usage
