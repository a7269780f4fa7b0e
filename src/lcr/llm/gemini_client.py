"""
Google Gemini text-generation client.

Uses the google-genai SDK against Google AI Studio (not Vertex AI).
Serves US tickers and is the last resort for CN/HK. No client-side retry:
callers apply their own degrade policy on failure.
"""

from __future__ import annotations

import time

from google import genai
from google.genai import types

from lcr.budget import calculate_cost
from lcr.exceptions import GenerationError
from lcr.llm.base import GenerationResult
from lcr.logging import get_logger
from lcr.types import TokenUsage

logger = get_logger(__name__)


class GeminiClient:
    """Gemini client using the google-genai async API."""

    def __init__(self, api_key: str, model: str, temperature: float = 0.7) -> None:
        """Initialize the Gemini client.

        Args:
            api_key: Google AI Studio API key.
            model: Default model name.
            temperature: Sampling temperature.
        """
        self._client = genai.Client(api_key=api_key)
        self._model = model
        self._temperature = temperature

    @property
    def provider(self) -> str:
        return "gemini"

    @property
    def model(self) -> str:
        return self._model

    async def generate(self, prompt: str, model_override: str | None = None) -> GenerationResult:
        """Send one prompt and return text plus usage.

        Args:
            prompt: The full prompt.
            model_override: Model to use instead of the default.

        Returns:
            GenerationResult with cost computed from Gemini pricing.

        Raises:
            GenerationError: If the request fails.
        """
        model = model_override or self._model
        start_time = time.monotonic()

        try:
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=prompt,
                config=types.GenerateContentConfig(temperature=self._temperature),
            )
        except Exception as e:
            raise GenerationError(
                f"Gemini API error: {e}",
                context={"provider": self.provider, "model": model},
            ) from e

        text = ""
        if response.candidates and response.candidates[0].content:
            for part in response.candidates[0].content.parts or []:
                if part.text:
                    text += part.text

        input_tokens = 0
        output_tokens = 0
        if response.usage_metadata:
            input_tokens = response.usage_metadata.prompt_token_count or 0
            output_tokens = response.usage_metadata.candidates_token_count or 0

        logger.debug(
            "Gemini generation complete",
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=int((time.monotonic() - start_time) * 1000),
        )

        return GenerationResult(
            text=text,
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=calculate_cost(self.provider, input_tokens, output_tokens),
            ),
            provider=self.provider,
            model=model,
        )
