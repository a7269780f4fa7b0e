"""
Tests for ticker-based model routing.
"""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from lcr.config import Settings
from lcr.exceptions import ConfigurationError
from lcr.llm.gemini_client import GeminiClient
from lcr.llm.openai_compat_client import OpenAICompatClient
from lcr.llm.router import ModelRouter


def settings_with(**keys: str) -> Settings:
    env = {"GEMINI_API_KEY": "", "DEEPSEEK_API_KEY": "", "QWEN_API_KEY": "", **keys}
    with patch.dict(os.environ, env):
        return Settings()


class TestProviderFor:
    """Test provider selection by market."""

    def test_us_uses_gemini(self) -> None:
        """Test US tickers route to Gemini."""
        router = ModelRouter(settings_with(GEMINI_API_KEY="g", DEEPSEEK_API_KEY="d"))
        assert router.provider_for("AAPL") == "gemini"

    def test_cn_prefers_deepseek(self) -> None:
        """Test CN tickers prefer DeepSeek."""
        router = ModelRouter(settings_with(GEMINI_API_KEY="g", DEEPSEEK_API_KEY="d", QWEN_API_KEY="q"))
        assert router.provider_for("600519") == "deepseek"

    def test_hk_falls_back_to_qwen(self) -> None:
        """Test HK tickers use Qwen when DeepSeek is absent."""
        router = ModelRouter(settings_with(GEMINI_API_KEY="g", QWEN_API_KEY="q"))
        assert router.provider_for("0700.HK") == "qwen"

    def test_cn_last_resort_gemini(self) -> None:
        """Test CN tickers fall back to Gemini."""
        router = ModelRouter(settings_with(GEMINI_API_KEY="g"))
        assert router.provider_for("000001") == "gemini"

    def test_us_without_gemini_key(self) -> None:
        """Test a US ticker never routes to a CN provider."""
        router = ModelRouter(settings_with(DEEPSEEK_API_KEY="d"))
        with pytest.raises(ConfigurationError, match="GEMINI_API_KEY"):
            router.provider_for("AAPL")

    def test_cn_without_any_key(self) -> None:
        """Test a CN ticker with no keys names the CN providers."""
        router = ModelRouter(settings_with())
        with pytest.raises(ConfigurationError, match="DEEPSEEK_API_KEY or QWEN_API_KEY"):
            router.provider_for("600519")


class TestClients:
    """Test client creation and caching."""

    def test_gemini_client_cached(self) -> None:
        """Test the same client is reused for one provider."""
        router = ModelRouter(settings_with(GEMINI_API_KEY="g"))
        with patch("lcr.llm.gemini_client.genai.Client"):
            first = router.for_ticker("AAPL")
            second = router.for_ticker("MSFT")

        assert isinstance(first, GeminiClient)
        assert first is second

    def test_deepseek_client(self) -> None:
        """Test CN tickers get an OpenAI-compatible client."""
        router = ModelRouter(settings_with(DEEPSEEK_API_KEY="d"))
        client = router.for_ticker("600519")

        assert isinstance(client, OpenAICompatClient)
        assert client.provider == "deepseek"
        assert client.model == "deepseek-chat"

    def test_default_generator_none_without_keys(self) -> None:
        """Test no default generator without provider keys."""
        assert ModelRouter(settings_with()).default_generator() is None

    def test_default_generator_first_provider(self) -> None:
        """Test the default generator is the first configured provider."""
        router = ModelRouter(settings_with(QWEN_API_KEY="q"))
        assert router.default_generator().provider == "qwen"


class TestFastModel:
    """Test fast-model selection."""

    def test_gemini_has_fast_model(self) -> None:
        """Test Gemini-routed tickers use the flash model."""
        router = ModelRouter(settings_with(GEMINI_API_KEY="g"))
        assert router.fast_model_for_ticker("AAPL") == "gemini-2.5-flash"

    def test_openai_compat_has_none(self) -> None:
        """Test DeepSeek-routed tickers keep the default model."""
        router = ModelRouter(settings_with(DEEPSEEK_API_KEY="d"))
        assert router.fast_model_for_ticker("600519") is None

    def test_routing_failure_has_none(self) -> None:
        """Test a missing key yields no fast model instead of raising."""
        assert ModelRouter(settings_with()).fast_model_for_ticker("AAPL") is None


class TestTickerBoundGenerator:
    """Test lazy routing through bind()."""

    def test_bind_defers_configuration_error(self) -> None:
        """Test binding succeeds even without a key."""
        bound = ModelRouter(settings_with()).bind("AAPL")
        with pytest.raises(ConfigurationError):
            _ = bound.provider

    async def test_generate_raises_configuration_error(self) -> None:
        """Test the missing key surfaces on the first call."""
        bound = ModelRouter(settings_with()).bind("AAPL")
        with pytest.raises(ConfigurationError):
            await bound.generate("prompt")
