"""
OpenAI-compatible text-generation client (DeepSeek, Qwen).

Uses AsyncOpenAI pointed at the provider's base URL. This is the only place
in the system that retries: transient network failures (connection
reset/refused, timeouts, socket errors) are retried with exponential backoff;
everything else propagates immediately as GenerationError.
"""

from __future__ import annotations

import time

import httpx
from openai import APIConnectionError, APITimeoutError, AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from lcr.budget import calculate_cost
from lcr.exceptions import GenerationError
from lcr.llm.base import GenerationResult
from lcr.logging import get_logger
from lcr.types import TokenUsage

logger = get_logger(__name__)

# Substrings of error messages that mark a transient network failure
TRANSIENT_MARKERS = (
    "terminated",
    "socket",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "enotfound",
    "connection reset",
    "connection refused",
)


def _is_transient(exc: BaseException) -> bool:
    """Return True for network errors worth retrying."""
    if isinstance(exc, (APIConnectionError, APITimeoutError, httpx.TransportError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


class OpenAICompatClient:
    """Chat-completions client for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        provider: str,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 180.0,
        max_attempts: int = 3,
        wait: wait_base | None = None,
        temperature: float = 0.7,
    ) -> None:
        """Initialize the client.

        Args:
            provider: Provider name used for pricing and logs (deepseek, qwen).
            api_key: Provider API key.
            base_url: OpenAI-compatible base URL.
            model: Default model name.
            timeout: Per-request timeout in seconds.
            max_attempts: Total attempts for transient failures.
            wait: Backoff strategy between attempts (exponential 1s..10s by default).
            temperature: Sampling temperature.
        """
        # SDK retries are disabled; tenacity owns the retry policy
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )
        self._provider = provider
        self._model = model
        self._max_attempts = max_attempts
        self._wait = wait or wait_exponential(multiplier=1, min=1, max=10)
        self._temperature = temperature

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def model(self) -> str:
        return self._model

    async def generate(self, prompt: str, model_override: str | None = None) -> GenerationResult:
        """Send one prompt, retrying transient network errors.

        Args:
            prompt: The full prompt.
            model_override: Model to use instead of the default.

        Returns:
            GenerationResult with provider pricing applied.

        Raises:
            GenerationError: On non-retryable errors, an empty response, or
                after the final attempt fails.
        """
        model = model_override or self._model
        start_time = time.monotonic()
        attempts = 0

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_transient),
                wait=self._wait,
                stop=stop_after_attempt(self._max_attempts),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        logger.warning(
                            "Retrying after transient error",
                            provider=self._provider,
                            model=model,
                            attempt=attempts,
                        )
                    response = await self._client.chat.completions.create(
                        model=model,
                        messages=[{"role": "user", "content": prompt}],
                        temperature=self._temperature,
                    )
        except Exception as e:
            raise GenerationError(
                f"{self._provider} API error: {e}",
                context={"provider": self._provider, "model": model, "attempts": attempts},
            ) from e

        if not response.choices or not response.choices[0].message.content:
            raise GenerationError(
                f"Empty response from {self._provider}",
                context={"provider": self._provider, "model": model},
            )

        text = response.choices[0].message.content
        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0

        logger.debug(
            "OpenAI-compatible generation complete",
            provider=self._provider,
            model=model,
            attempts=attempts,
            latency_ms=int((time.monotonic() - start_time) * 1000),
        )

        return GenerationResult(
            text=text,
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=calculate_cost(self._provider, input_tokens, output_tokens),
            ),
            provider=self._provider,
            model=model,
        )
