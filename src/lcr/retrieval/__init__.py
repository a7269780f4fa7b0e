"""
Web search for research nodes.

- SearchProvider: protocol consumed by the node executor
- TavilySearchProvider: Tavily search API over httpx
"""

from lcr.retrieval.search_provider import SearchProvider, TavilySearchProvider

__all__ = [
    "SearchProvider",
    "TavilySearchProvider",
]
