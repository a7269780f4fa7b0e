"""
Logic-chain equity research.

Plans topic chains for a ticker, investigates each chain through web search
and fact extraction, and synthesizes a structured investment report while
streaming full-state snapshots to a consumer.
"""

__version__ = "0.3.0"
