"""
Topic-chain planner.

One generation call produces the research plan. Unusable output never fails
the run: the predefined fallback chain takes its place.
"""

from __future__ import annotations

from lcr.extraction import fallback_topic_chains, parse_topic_chains
from lcr.logging import get_logger
from lcr.prompts import build_planning_prompt
from lcr.research.context import ResearchContext
from lcr.types import LogType, TokenUsage, TopicChain

logger = get_logger(__name__)


async def plan(ctx: ResearchContext) -> tuple[list[TopicChain], TokenUsage]:
    """Plan topic chains for the context's ticker.

    Args:
        ctx: Research context.

    Returns:
        Tuple of (unexecuted topic chains, usage of the planning call).

    Raises:
        GenerationError: If the planning call itself fails.
    """
    ctx.emit(LogType.PLAN, "plan_start", ticker=ctx.ticker)

    result = await ctx.generate(build_planning_prompt(ctx.ticker, ctx.language))

    parsed = parse_topic_chains(result.text)
    if parsed.ok and parsed.value:
        chains = parsed.value
    else:
        logger.warning("Planner output unusable, using fallback chain", reason=parsed.error)
        ctx.emit(
            LogType.ANALYSIS_PROGRESS,
            "plan_fallback",
            data={"warning": True},
            reason=parsed.error,
        )
        chains = fallback_topic_chains(ctx.ticker)

    total_steps = sum(chain.total_nodes for chain in chains)
    ctx.emit(
        LogType.PLAN,
        "plan_done",
        data={"chains": [{"topic": c.topic, "steps": c.total_nodes} for c in chains]},
        topics=len(chains),
        steps=total_steps,
    )
    logger.info("Planned topic chains", topics=len(chains), steps=total_steps)

    return chains, result.usage
