"""
Text-generation package.

This package provides one interface over the generation providers:
- Google Gemini (google-genai)
- DeepSeek and Qwen (OpenAI-compatible endpoints)
"""

from lcr.llm.base import GenerationResult, TextGenerator
from lcr.llm.gemini_client import GeminiClient
from lcr.llm.openai_compat_client import OpenAICompatClient
from lcr.llm.router import ModelRouter, TickerBoundGenerator

__all__ = [
    "GeminiClient",
    "GenerationResult",
    "ModelRouter",
    "OpenAICompatClient",
    "TextGenerator",
    "TickerBoundGenerator",
]
