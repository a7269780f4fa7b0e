"""
Web search providers.

Search is a capability: search(query, max_results) -> list[SearchResult].
Providers raise SearchError on any failure; the node executor decides how
to degrade.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import orjson

from lcr.exceptions import ConfigurationError, SearchError
from lcr.logging import get_logger
from lcr.types import SearchResult

logger = get_logger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"

# Length of the short snippet cut from Tavily's full content
SNIPPET_LENGTH = 200


class SearchProvider(Protocol):
    """Protocol for web search providers."""

    async def search(self, query: str, max_results: int = 5) -> list[SearchResult]:
        """Search the web.

        Args:
            query: Search query string.
            max_results: Maximum number of results to return.

        Returns:
            List of SearchResult objects, content included where available.

        Raises:
            SearchError: If the search fails.
        """
        ...


def _snippet(text: str) -> str:
    if len(text) <= SNIPPET_LENGTH:
        return text
    return text[:SNIPPET_LENGTH] + "..."


class TavilySearchProvider:
    """Tavily search over its REST API.

    Uses advanced search depth and asks for Tavily's generated answer, which
    is returned as a leading "AI Summary" result.
    """

    def __init__(
        self,
        api_key: str | None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the provider.

        Args:
            api_key: Tavily API key.
            client: Optional preconfigured HTTP client (tests inject a mock transport).
            timeout: Request timeout in seconds.
        """
        self._api_key = api_key
        self._client = client
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str, max_results: int = 5) -> list[SearchResult]:
        """Run one Tavily search.

        Raises:
            ConfigurationError: If no API key is configured.
            SearchError: On HTTP or decoding failures.
        """
        if not self._api_key:
            raise ConfigurationError("TAVILY_API_KEY is not set", context={"query": query})

        client = await self._get_client()
        payload = {
            "api_key": self._api_key,
            "query": query,
            "search_depth": "advanced",
            "include_answer": True,
            "include_raw_content": False,
            "max_results": max_results,
        }

        try:
            response = await client.post(TAVILY_SEARCH_URL, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SearchError(
                f"Tavily API error: {e.response.status_code}",
                context={
                    "provider": "tavily",
                    "query": query,
                    "status_code": e.response.status_code,
                    "response": e.response.text[:200] if e.response.text else None,
                },
            ) from e
        except httpx.RequestError as e:
            raise SearchError(
                f"Tavily request failed: {e}",
                context={"provider": "tavily", "query": query},
            ) from e

        try:
            data: dict[str, Any] = orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise SearchError(
                "Failed to parse Tavily response",
                context={"provider": "tavily", "query": query},
            ) from e

        results: list[SearchResult] = []
        answer = data.get("answer")
        if answer:
            results.append(
                SearchResult(title="AI Summary", snippet=_snippet(answer), link="", content=answer)
            )

        for item in data.get("results") or []:
            content = item.get("content") or ""
            results.append(
                SearchResult(
                    title=item.get("title") or "",
                    snippet=_snippet(content),
                    link=item.get("url") or "",
                    content=content,
                )
            )

        logger.debug("Tavily search complete", query=query, results=len(results))
        return results
