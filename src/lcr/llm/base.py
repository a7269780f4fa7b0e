"""
Base types for text-generation clients.

This module defines:
- GenerationResult: Standardized response (text + usage)
- TextGenerator: Protocol every provider client implements
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from lcr.types import TokenUsage


@dataclass
class GenerationResult:
    """Standardized generation response.

    All providers convert to this format from their native response.
    """

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    provider: str = ""
    model: str = ""

    @property
    def total_tokens(self) -> int:
        """Total tokens used."""
        return self.usage.total_tokens


@runtime_checkable
class TextGenerator(Protocol):
    """Protocol for text-generation clients.

    All providers must implement this interface.
    """

    @property
    def provider(self) -> str:
        """Name of this provider (e.g., 'gemini', 'deepseek', 'qwen')."""
        ...

    async def generate(self, prompt: str, model_override: str | None = None) -> GenerationResult:
        """Generate text for a single prompt.

        Args:
            prompt: The full prompt.
            model_override: Use this model instead of the client default.

        Returns:
            Generated text with token usage and cost.

        Raises:
            GenerationError: If the provider call fails.
        """
        ...
