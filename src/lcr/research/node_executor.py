"""
Node executor: one investigation step.

Algorithm:
1. Fan out one search per question (each inside a call-gate slot)
2. Keep results with content across all questions
3. Extract facts from the combined results (one generation call)
4. Explain the facts against the node's intent (one generation call)

Every failure below degrades to a default: a failed search contributes no
results, failed extraction yields no findings, failed reasoning yields a
canned sentence. Only cancellation escapes.
"""

from __future__ import annotations

import asyncio

from lcr.exceptions import ResearchCancelledError
from lcr.extraction import parse_findings
from lcr.logging import get_logger
from lcr.prompts import build_fact_extraction_prompt, build_reasoning_prompt, message
from lcr.research.context import ResearchContext
from lcr.types import LogType, NodeExecutionResult, ResearchNode, SearchResult, TokenUsage

logger = get_logger(__name__)


async def _search_question(ctx: ResearchContext, node: ResearchNode, question: str) -> list[SearchResult]:
    ctx.emit(
        LogType.SEARCH_QUERY,
        "search_query",
        data={"nodeId": node.id, "question": question},
        question=question,
    )
    try:
        async with ctx.gates.call.slot():
            results = await ctx.search.search(question, ctx.search_max_results)
    except ResearchCancelledError:
        raise
    except Exception as e:
        logger.warning("Search failed", node_id=node.id, question=question, error=str(e))
        ctx.emit(
            LogType.SEARCH_RESULTS,
            "search_failed",
            data={"nodeId": node.id, "question": question, "error": True},
            question=question,
        )
        return []

    ctx.emit(
        LogType.SEARCH_RESULTS,
        "search_results",
        data={"nodeId": node.id, "question": question, "resultCount": len(results)},
        count=len(results),
    )
    return [r for r in results if r.content]


async def _extract_findings(
    ctx: ResearchContext, node: ResearchNode, results: list[SearchResult], usage: TokenUsage
) -> list[str]:
    ctx.emit(
        LogType.ANALYSIS_PROGRESS,
        "extracting",
        data={"nodeId": node.id},
        count=len(results),
    )
    try:
        response = await ctx.generate(
            build_fact_extraction_prompt(node.intent, results, ctx.language), fast=True
        )
    except ResearchCancelledError:
        raise
    except Exception as e:
        logger.warning("Fact extraction call failed", node_id=node.id, error=str(e))
        ctx.emit(
            LogType.ANALYSIS_PROGRESS,
            "extraction_failed",
            data={"nodeId": node.id, "warning": True},
            step=node.step_name,
        )
        return []

    usage.add(response.usage)
    parsed = parse_findings(response.text)
    if not parsed.ok:
        logger.warning("Fact extraction output unusable", node_id=node.id, reason=parsed.error)
        ctx.emit(
            LogType.ANALYSIS_PROGRESS,
            "extraction_failed",
            data={"nodeId": node.id, "warning": True},
            step=node.step_name,
        )
        return []
    return parsed.unwrap_or([])


async def _derive_reasoning(
    ctx: ResearchContext, node: ResearchNode, findings: list[str], usage: TokenUsage
) -> str:
    fallback = message(ctx.language, "reasoning_fallback", count=len(findings), intent=node.intent)
    try:
        response = await ctx.generate(
            build_reasoning_prompt(node.intent, findings, ctx.language), fast=True
        )
    except ResearchCancelledError:
        raise
    except Exception as e:
        logger.warning("Reasoning call failed, using fallback", node_id=node.id, error=str(e))
        return fallback

    usage.add(response.usage)
    return response.text.strip() or fallback


async def execute_node(ctx: ResearchContext, node: ResearchNode) -> tuple[NodeExecutionResult, TokenUsage]:
    """Execute one research node.

    Args:
        ctx: Research context.
        node: Planned node (not modified).

    Returns:
        Tuple of (execution result, usage of this node's generation calls).

    Raises:
        ResearchCancelledError: If the run is cancelled mid-node.
    """
    ctx.emit(
        LogType.MISSION_START,
        "node_start",
        data={"nodeId": node.id, "intent": node.intent},
        step=node.step_name,
    )
    usage = TokenUsage()

    batches = await asyncio.gather(*(_search_question(ctx, node, q) for q in node.questions))
    results = [r for batch in batches for r in batch]

    findings: list[str] = []
    if results:
        findings = await _extract_findings(ctx, node, results, usage)

    reasoning = ""
    if findings:
        reasoning = await _derive_reasoning(ctx, node, findings, usage)

    logger.debug(
        "Node executed",
        node_id=node.id,
        results=len(results),
        findings=len(findings),
        tokens=usage.total_tokens,
    )

    return (
        NodeExecutionResult(
            node_id=node.id,
            findings=findings,
            reasoning=reasoning,
            search_results_used=results,
        ),
        usage,
    )
