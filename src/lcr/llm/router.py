"""
Ticker-based model routing.

The listing market of the ticker decides the provider:
- US tickers use Gemini;
- CN/HK tickers use DeepSeek, then Qwen, then Gemini as a last resort.

Clients are created lazily from the Settings passed in and cached per
provider, so one router can serve many runs.
"""

from __future__ import annotations

from lcr.config import Settings
from lcr.exceptions import ConfigurationError
from lcr.llm.base import GenerationResult, TextGenerator
from lcr.llm.gemini_client import GeminiClient
from lcr.llm.openai_compat_client import OpenAICompatClient
from lcr.logging import get_logger
from lcr.types import Market, detect_market

logger = get_logger(__name__)

# Provider preference by market
PROVIDER_PREFERENCE: dict[Market, tuple[str, ...]] = {
    Market.US: ("gemini",),
    Market.CN: ("deepseek", "qwen", "gemini"),
    Market.HK: ("deepseek", "qwen", "gemini"),
}


class ModelRouter:
    """Selects and caches the generation client for a ticker."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._clients: dict[str, TextGenerator] = {}

    def _has_key(self, provider: str) -> bool:
        return provider in self._settings.available_providers

    def provider_for(self, ticker: str) -> str:
        """Return the provider name that will serve this ticker.

        Raises:
            ConfigurationError: If no key is configured for any provider
                acceptable for the ticker's market.
        """
        market = detect_market(ticker)
        candidates = PROVIDER_PREFERENCE[market]
        for provider in candidates:
            if self._has_key(provider):
                return provider

        if market == Market.US:
            raise ConfigurationError(
                "GEMINI_API_KEY is not set",
                context={"ticker": ticker, "market": market.value},
            )
        raise ConfigurationError(
            "No API key found for CN/HK market. Set DEEPSEEK_API_KEY or QWEN_API_KEY",
            context={"ticker": ticker, "market": market.value},
        )

    def for_ticker(self, ticker: str) -> TextGenerator:
        """Get the generation client for a ticker.

        Args:
            ticker: Stock ticker symbol.

        Returns:
            A TextGenerator for the routed provider.

        Raises:
            ConfigurationError: If the needed provider key is missing.
        """
        provider = self.provider_for(ticker)
        if provider not in self._clients:
            self._clients[provider] = self._create_client(provider)
            logger.info("Created generation client", provider=provider, ticker=ticker)
        return self._clients[provider]

    def _create_client(self, provider: str) -> TextGenerator:
        s = self._settings
        if provider == "gemini":
            return GeminiClient(api_key=s.GEMINI_API_KEY or "", model=s.GOOGLE_MODEL_NAME)
        if provider == "deepseek":
            return OpenAICompatClient(
                provider="deepseek",
                api_key=s.DEEPSEEK_API_KEY or "",
                base_url=s.DEEPSEEK_BASE_URL,
                model=s.DEEPSEEK_MODEL_NAME,
                timeout=s.OPENAI_COMPAT_TIMEOUT_SECONDS,
                max_attempts=s.OPENAI_COMPAT_MAX_ATTEMPTS,
            )
        if provider == "qwen":
            return OpenAICompatClient(
                provider="qwen",
                api_key=s.QWEN_API_KEY or "",
                base_url=s.QWEN_BASE_URL,
                model=s.QWEN_MODEL_NAME,
                timeout=s.OPENAI_COMPAT_TIMEOUT_SECONDS,
                max_attempts=s.OPENAI_COMPAT_MAX_ATTEMPTS,
            )
        raise ConfigurationError(f"Unknown provider: {provider}")

    def bind(self, ticker: str) -> TickerBoundGenerator:
        """Return a generator that routes every call for this ticker.

        Routing happens on the first call, so a missing key surfaces inside
        the run instead of at construction time.
        """
        return TickerBoundGenerator(self, ticker)

    def default_generator(self) -> TextGenerator | None:
        """Client of the first configured provider, for calls not tied to a ticker."""
        providers = self._settings.available_providers
        if not providers:
            return None
        provider = providers[0]
        if provider not in self._clients:
            self._clients[provider] = self._create_client(provider)
        return self._clients[provider]

    def fast_model_for_ticker(self, ticker: str) -> str | None:
        """Fast model for a ticker, or None when routing fails or isn't Gemini."""
        try:
            provider = self.provider_for(ticker)
        except ConfigurationError:
            return None
        return self._settings.GOOGLE_MODEL_NAME_FLASH if provider == "gemini" else None


class TickerBoundGenerator:
    """TextGenerator that delegates to the router's client for one ticker."""

    def __init__(self, router: ModelRouter, ticker: str) -> None:
        self._router = router
        self._ticker = ticker

    @property
    def provider(self) -> str:
        return self._router.provider_for(self._ticker)

    async def generate(self, prompt: str, model_override: str | None = None) -> GenerationResult:
        client = self._router.for_ticker(self._ticker)
        return await client.generate(prompt, model_override=model_override)
