"""
Custom exception hierarchy for logic-chain research.

All exceptions inherit from LCRError, which carries optional structured
context for logging. Capability clients translate provider/SDK errors into
these types; the research layers decide which ones degrade and which ones
end the run.
"""

from __future__ import annotations

from typing import Any


class LCRError(Exception):
    """Base exception for all research errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(LCRError):
    """Raised when configuration is invalid or missing.

    Examples:
        - No generation provider key for the ticker's market
        - Missing TAVILY_API_KEY when a live search is attempted
    """

    pass


class GenerationError(LCRError):
    """Raised when a text-generation call fails.

    Context should include:
        - provider: gemini, deepseek or qwen
        - model: The model being used
        - attempts: Number of attempts made (OpenAI-compatible only)
    """

    pass


class SearchError(LCRError):
    """Raised when a web search call fails.

    Context should include:
        - provider: The search provider
        - query: The search query
        - status_code: HTTP status code if applicable
    """

    pass


class QuoteError(LCRError):
    """Raised when a market quote cannot be fetched or parsed.

    Context should include:
        - ticker: The ticker requested
        - url: The quote endpoint
    """

    pass


class PersistenceError(LCRError):
    """Raised when saving or loading a report fails."""

    pass


class ResearchCancelledError(LCRError):
    """Raised when a gate is acquired after the run was cancelled."""

    pass
