"""
Chain executor: runs one topic's nodes strictly in order.

Node k starts only after node k-1's result is recorded. Findings are not
passed between nodes; every node's questions were fixed at planning time.
"""

from __future__ import annotations

from lcr.logging import get_logger
from lcr.research.context import ResearchContext
from lcr.research.node_executor import execute_node
from lcr.types import LogType, TokenUsage, TopicChain

logger = get_logger(__name__)

# Reasoning characters included in the per-node progress log
REASONING_PREVIEW = 100


async def execute_chain(ctx: ResearchContext, chain: TopicChain) -> tuple[TopicChain, TokenUsage]:
    """Execute every node of a chain sequentially.

    Args:
        ctx: Research context.
        chain: Planned chain (not modified).

    Returns:
        Tuple of (new chain with executed nodes, summed node usage).
    """
    ctx.emit(
        LogType.MISSION_START,
        "chain_start",
        data={"topic": chain.topic, "steps": chain.total_nodes},
        topic=chain.topic,
    )

    usage = TokenUsage()
    executed = TopicChain(topic=chain.topic)

    for node in chain.nodes:
        result, node_usage = await execute_node(ctx, node)
        usage.add(node_usage)
        executed.nodes.append(node.with_results(result.findings, result.reasoning))

        ctx.emit(
            LogType.ANALYSIS_PROGRESS,
            "node_done",
            data={
                "nodeId": node.id,
                "findingsCount": len(result.findings),
                "reasoning": result.reasoning[:REASONING_PREVIEW],
            },
            step=node.step_name,
            count=len(result.findings),
        )

    logger.info(
        "Chain complete",
        topic=chain.topic,
        completed=executed.completed_nodes,
        total=executed.total_nodes,
    )
    return executed, usage
