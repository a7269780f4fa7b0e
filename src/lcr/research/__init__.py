"""
Logic-chain research core.

- plan: topic-chain planner
- execute_node / execute_chain: node and chain executors
- synthesize: final report synthesis
- InvestigationOrchestrator: the run state machine
"""

from lcr.research.chain_executor import execute_chain
from lcr.research.context import ResearchContext
from lcr.research.node_executor import execute_node
from lcr.research.orchestrator import InvestigationOrchestrator, build_orchestrator, run_research
from lcr.research.planner import plan
from lcr.research.synthesizer import synthesize

__all__ = [
    "InvestigationOrchestrator",
    "ResearchContext",
    "build_orchestrator",
    "execute_chain",
    "execute_node",
    "plan",
    "run_research",
    "synthesize",
]
