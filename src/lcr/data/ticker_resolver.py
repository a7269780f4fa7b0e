"""
Resolve free-text user input into candidate listings.

Resolution order:
1. Regex fast path for well-formed tickers (US letters, CN 6 digits, HK 4-5 digits)
2. Known Chinese company names
3. One generation call for names and concepts
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, TypeAdapter, ValidationError

from lcr.extraction import extract_json_array
from lcr.llm.base import TextGenerator
from lcr.logging import get_logger
from lcr.prompts import build_resolve_prompt

logger = get_logger(__name__)

_US_PATTERN = re.compile(r"^[A-Z]{1,5}$")
_CN_PATTERN = re.compile(r"^\d{6}$")
_HK_PATTERN = re.compile(r"^\d{4,5}(\.HK)?$", re.IGNORECASE)

# Common Chinese company names -> (symbol, market)
KNOWN_NAMES: dict[str, tuple[str, str]] = {
    "赣锋锂业": ("002460", "CN"),
    "贵州茅台": ("600519", "CN"),
    "五粮液": ("000858", "CN"),
    "比亚迪": ("002594", "CN"),
    "宁德时代": ("300750", "CN"),
    "中国平安": ("601318", "CN"),
    "招商银行": ("600036", "CN"),
    "工商银行": ("601398", "CN"),
    "建设银行": ("601939", "CN"),
    "中国银行": ("601988", "CN"),
    "腾讯控股": ("0700.HK", "HK"),
    "腾讯": ("0700.HK", "HK"),
    "阿里巴巴": ("9988.HK", "HK"),
    "美团": ("3690.HK", "HK"),
    "小米集团": ("1810.HK", "HK"),
    "小米": ("1810.HK", "HK"),
    "京东集团": ("9618.HK", "HK"),
}


class ResolvedTarget(BaseModel):
    """One candidate listing."""

    symbol: str
    name: str
    market: Literal["US", "CN", "HK", "OTHER"]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()


_TARGETS = TypeAdapter(list[ResolvedTarget])


@dataclass
class ResolveResult:
    """Candidates for a query, or an error message when resolution failed."""

    candidates: list[ResolvedTarget] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"candidates": [c.to_dict() for c in self.candidates]}
        if self.error is not None:
            result["error"] = self.error
        return result


def resolve_fast_path(query: str) -> ResolvedTarget | None:
    """Match well-formed tickers and known names without a model call."""
    trimmed = query.strip()

    if _US_PATTERN.match(trimmed):
        return ResolvedTarget(symbol=trimmed, name=trimmed, market="US")
    if _CN_PATTERN.match(trimmed):
        return ResolvedTarget(symbol=trimmed, name=trimmed, market="CN")
    if _HK_PATTERN.match(trimmed):
        symbol = trimmed.upper()
        if not symbol.endswith(".HK"):
            symbol = f"{symbol}.HK"
        return ResolvedTarget(symbol=symbol, name=symbol, market="HK")

    if trimmed in KNOWN_NAMES:
        symbol, market = KNOWN_NAMES[trimmed]
        return ResolvedTarget(symbol=symbol, name=trimmed, market=market)  # type: ignore[arg-type]

    return None


async def resolve_user_query(query: str, generator: TextGenerator | None) -> ResolveResult:
    """Resolve a user query into candidate tickers.

    Args:
        query: Ticker, company name or concept typed by the user.
        generator: Generation client for the model path; None disables it.

    Returns:
        ResolveResult. Failures return no candidates and an error message;
        nothing is raised.
    """
    trimmed = query.strip()
    if not trimmed:
        return ResolveResult(error="Empty query")

    fast = resolve_fast_path(trimmed)
    if fast is not None:
        return ResolveResult(candidates=[fast])

    if generator is None:
        return ResolveResult(error="Failed to resolve input")

    try:
        response = await generator.generate(build_resolve_prompt(trimmed))
    except Exception as e:
        logger.warning("Input resolution call failed", query=trimmed, error=str(e))
        return ResolveResult(error="Failed to resolve input")

    parsed = extract_json_array(response.text)
    if not parsed.ok:
        logger.warning("Input resolution returned no JSON", query=trimmed, error=parsed.error)
        return ResolveResult(error="Failed to resolve input")

    try:
        candidates = _TARGETS.validate_python(parsed.value)
    except ValidationError as e:
        logger.warning("Input resolution returned invalid candidates", query=trimmed, errors=e.error_count())
        return ResolveResult(error="Failed to resolve input")

    logger.info("Resolved input", query=trimmed, candidates=len(candidates))
    return ResolveResult(candidates=candidates)
