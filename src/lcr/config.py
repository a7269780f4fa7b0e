"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
The Settings object is built once at process start and passed explicitly
into every client constructor; nothing below the entry points reads the
environment on its own.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Generation providers (at least one is needed for a live run):
        GEMINI_API_KEY: Google AI Studio key (US tickers, last resort for CN/HK)
        DEEPSEEK_API_KEY: DeepSeek key (OpenAI-compatible, preferred for CN/HK)
        QWEN_API_KEY: Qwen/DashScope key (OpenAI-compatible, CN/HK after DeepSeek)

    Optional:
        TAVILY_API_KEY: Tavily web search key
        CALL_CONCURRENCY: Max in-flight generation+search calls per run
        CHAIN_CONCURRENCY: Max topic chains executing at once
        DATABASE_PATH: SQLite file for saved reports
        LOG_LEVEL: Logging level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Gemini (US tickers)
    GEMINI_API_KEY: str | None = Field(default=None, description="Google Gemini API key")
    GOOGLE_MODEL_NAME: str = Field(
        default="gemini-2.5-pro",
        description="Gemini model for planning and synthesis",
    )
    GOOGLE_MODEL_NAME_FLASH: str = Field(
        default="gemini-2.5-flash",
        description="Fast Gemini model for fact extraction and reasoning",
    )

    # OpenAI-compatible providers for CN/HK tickers
    DEEPSEEK_API_KEY: str | None = Field(default=None, description="DeepSeek API key")
    DEEPSEEK_BASE_URL: str = Field(default="https://api.deepseek.com")
    DEEPSEEK_MODEL_NAME: str = Field(default="deepseek-chat")
    QWEN_API_KEY: str | None = Field(default=None, description="Qwen (DashScope) API key")
    QWEN_BASE_URL: str = Field(default="https://dashscope.aliyuncs.com/compatible-mode/v1")
    QWEN_MODEL_NAME: str = Field(default="qwen-plus")
    OPENAI_COMPAT_TIMEOUT_SECONDS: float = Field(
        default=180.0, gt=0.0, description="Per-request timeout for OpenAI-compatible providers"
    )
    OPENAI_COMPAT_MAX_ATTEMPTS: int = Field(
        default=3, ge=1, le=10, description="Attempts for transient network errors"
    )

    # Web search
    TAVILY_API_KEY: str | None = Field(default=None, description="Tavily search API key")
    SEARCH_MAX_RESULTS: int = Field(default=5, ge=1, le=20)

    # Concurrency gates
    CALL_CONCURRENCY: int = Field(
        default=5, ge=1, le=50, description="Max in-flight generation+search calls"
    )
    CHAIN_CONCURRENCY: int = Field(
        default=2, ge=1, le=20, description="Max topic chains executing concurrently"
    )

    # Storage
    DATABASE_PATH: Path = Field(default=Path("data/reports.db"), description="Report database")
    OUTPUT_DIR: Path = Field(default=Path("output"), description="Output directory")

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )

    @model_validator(mode="after")
    def validate_gate_sizes(self) -> Settings:
        """Chains hold no call slot, but more chains than calls only queues work."""
        if self.CHAIN_CONCURRENCY > self.CALL_CONCURRENCY:
            raise ValueError(
                "CHAIN_CONCURRENCY must not exceed CALL_CONCURRENCY "
                f"({self.CHAIN_CONCURRENCY} > {self.CALL_CONCURRENCY})"
            )
        return self

    @property
    def available_providers(self) -> list[str]:
        """Return list of configured generation providers."""
        providers: list[str] = []
        if self.GEMINI_API_KEY:
            providers.append("gemini")
        if self.DEEPSEEK_API_KEY:
            providers.append("deepseek")
        if self.QWEN_API_KEY:
            providers.append("qwen")
        return providers

    def ensure_directories(self) -> None:
        """Create database and output directories if they don't exist."""
        self.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)
        self.OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

    def redacted_display(self) -> dict[str, str | int | float | None]:
        """Return settings with API keys redacted for display."""
        def redact(value: str | None) -> str | None:
            if value is None:
                return None
            return f"{value[:8]}...{value[-4:]}" if len(value) > 12 else "***"

        return {
            "GEMINI_API_KEY": redact(self.GEMINI_API_KEY),
            "GOOGLE_MODEL_NAME": self.GOOGLE_MODEL_NAME,
            "GOOGLE_MODEL_NAME_FLASH": self.GOOGLE_MODEL_NAME_FLASH,
            "DEEPSEEK_API_KEY": redact(self.DEEPSEEK_API_KEY),
            "DEEPSEEK_MODEL_NAME": self.DEEPSEEK_MODEL_NAME,
            "QWEN_API_KEY": redact(self.QWEN_API_KEY),
            "QWEN_MODEL_NAME": self.QWEN_MODEL_NAME,
            "TAVILY_API_KEY": redact(self.TAVILY_API_KEY),
            "SEARCH_MAX_RESULTS": self.SEARCH_MAX_RESULTS,
            "CALL_CONCURRENCY": self.CALL_CONCURRENCY,
            "CHAIN_CONCURRENCY": self.CHAIN_CONCURRENCY,
            "OPENAI_COMPAT_TIMEOUT_SECONDS": self.OPENAI_COMPAT_TIMEOUT_SECONDS,
            "OPENAI_COMPAT_MAX_ATTEMPTS": self.OPENAI_COMPAT_MAX_ATTEMPTS,
            "DATABASE_PATH": str(self.DATABASE_PATH),
            "OUTPUT_DIR": str(self.OUTPUT_DIR),
            "LOG_LEVEL": self.LOG_LEVEL,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
