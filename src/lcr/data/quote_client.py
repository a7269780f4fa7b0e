"""
Market quotes from Tencent Finance.

Endpoint: http://qt.gtimg.cn/q={symbol}
- US: us{TICKER}          (v_usAAPL="...")
- HK: hk{5-digit code}    (v_hk00700="...")
- CN: sh/sz{6-digit code} (6 -> sh, 0/3 -> sz)

Responses are GBK-encoded, one `~`-separated record per symbol. Field
positions differ per market; see the _parse_* functions.
"""

from __future__ import annotations

import re
from typing import Protocol

import httpx

from lcr.exceptions import QuoteError
from lcr.logging import get_logger
from lcr.types import Market, MarketQuote, detect_market

logger = get_logger(__name__)

TENCENT_QUOTE_URL = "http://qt.gtimg.cn/q="

# Minimum fields in a usable record
MIN_FIELDS = 14

_US_TICKER = re.compile(r"^[A-Z]{1,5}(\.[A-Z])?$")
_RECORD = re.compile(r'v_(?:us|hk|sh|sz)[^=]*="([^"]*)"')


class QuoteProvider(Protocol):
    """Protocol for market quote sources."""

    async def get_quote(self, ticker: str) -> MarketQuote:
        """Fetch a point-in-time quote.

        Raises:
            QuoteError: If the quote cannot be fetched or parsed.
        """
        ...


def _float(value: str | None) -> float:
    try:
        return float(value) if value else 0.0
    except ValueError:
        return 0.0


def tencent_symbol(ticker: str) -> tuple[str, Market]:
    """Map a ticker to its Tencent symbol and market.

    Raises:
        QuoteError: If the ticker is not a valid symbol for its market.
    """
    normalized = ticker.strip().upper()
    market = detect_market(normalized)

    if market == Market.HK:
        code = normalized.removesuffix(".HK")
        if not code.isdigit():
            raise QuoteError(f"Invalid HK ticker: {ticker}", context={"ticker": ticker})
        return f"hk{code.zfill(5)}", market

    if market == Market.CN:
        prefix = "sh" if normalized.startswith("6") else "sz"
        return f"{prefix}{normalized}", market

    if not _US_TICKER.match(normalized):
        raise QuoteError(f"Invalid US stock ticker: {ticker}", context={"ticker": ticker})
    return f"us{normalized}", market


def _derive_change(
    price: float, previous_close: float, change: float, change_percent: float
) -> tuple[float, float, float]:
    """Fill in price/change/percent from whichever fields are present."""
    if price > 0 and previous_close > 0:
        if change == 0:
            change = price - previous_close
        if change_percent == 0 and change != 0:
            change_percent = change / previous_close * 100
    elif price == 0 and change != 0 and previous_close > 0:
        price = previous_close + change
        if change_percent == 0:
            change_percent = change / previous_close * 100
    elif price == 0 and previous_close > 0:
        price = previous_close
        change = 0.0
        change_percent = 0.0
    elif price > 0 and change != 0 and previous_close == 0:
        previous_close = price - change
        change_percent = change / previous_close * 100 if previous_close > 0 else 0.0
    return price, change, change_percent


def _parse_us(fields: list[str], ticker: str) -> MarketQuote:
    # 1 name, 2 price, 3 prev close, 5 volume, 11 price (again), 12 change, 13 change %, 16 market cap
    price = _float(fields[2])
    if price == 0:
        price = _float(fields[11])
    previous_close = _float(fields[3])
    price, change, change_percent = _derive_change(
        price, previous_close, _float(fields[12]), _float(fields[13])
    )
    volume = _float(fields[5])
    market_cap = _float(fields[16]) if len(fields) > 16 else 0.0
    return MarketQuote(
        ticker=ticker,
        name=(fields[1] or ticker).strip(),
        price=price,
        change=change,
        change_percent=change_percent,
        market_cap=market_cap or None,
        volume=volume or None,
        currency="USD",
    )


def _parse_cn(fields: list[str], ticker: str) -> MarketQuote:
    # 1 name, 2 code, 3 price, 4 prev close, 6 volume (lots), 30 market cap
    price = _float(fields[3])
    previous_close = _float(fields[4])
    price, change, change_percent = _derive_change(price, previous_close, 0.0, 0.0)
    volume = _float(fields[6]) or _float(fields[5])
    market_cap = _float(fields[30]) if len(fields) > 30 else 0.0
    return MarketQuote(
        ticker=ticker,
        name=(fields[1] or ticker).strip(),
        price=price,
        change=change,
        change_percent=change_percent,
        market_cap=market_cap or None,
        volume=volume or None,
        currency="CNY",
    )


def _parse_hk(fields: list[str], ticker: str) -> MarketQuote:
    # 1 name, 3 price, 4 prev close, 6 volume, 31 change, 32 change %, 39 market cap
    price = _float(fields[3])
    previous_close = _float(fields[4])
    change = _float(fields[31]) if len(fields) > 31 else 0.0
    change_percent = _float(fields[32]) if len(fields) > 32 else 0.0
    price, change, change_percent = _derive_change(price, previous_close, change, change_percent)
    volume = _float(fields[6])
    market_cap = _float(fields[39]) if len(fields) > 39 else 0.0
    return MarketQuote(
        ticker=ticker,
        name=(fields[1] or ticker).strip(),
        price=price,
        change=change,
        change_percent=change_percent,
        market_cap=market_cap or None,
        volume=volume or None,
        currency="HKD",
    )


def parse_tencent_response(text: str, ticker: str, market: Market) -> MarketQuote:
    """Parse one decoded Tencent Finance record into a MarketQuote.

    Raises:
        QuoteError: If no record is found or it has too few fields.
    """
    match = _RECORD.search(text)
    if not match or not match.group(1):
        raise QuoteError(
            f"Failed to parse Tencent API response for {ticker}",
            context={"ticker": ticker, "response": text[:200]},
        )

    fields = match.group(1).split("~")
    if len(fields) < MIN_FIELDS:
        raise QuoteError(
            f"Insufficient data fields in response for {ticker}. Got {len(fields)} fields.",
            context={"ticker": ticker, "fields": len(fields)},
        )

    if market == Market.CN:
        quote = _parse_cn(fields, ticker)
    elif market == Market.HK:
        quote = _parse_hk(fields, ticker)
    else:
        quote = _parse_us(fields, ticker)

    if quote.price == 0:
        logger.warning("Quote price is 0", ticker=ticker, market=market.value)
    return quote


class TencentQuoteClient:
    """Quote client for US, HK and CN listings via Tencent Finance."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 15.0) -> None:
        self._client = client
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_quote(self, ticker: str) -> MarketQuote:
        """Fetch a quote for any supported market.

        Args:
            ticker: US ticker, 6-digit CN code, or HK code (with or without .HK).

        Returns:
            MarketQuote with price, change and optional market cap/volume.

        Raises:
            QuoteError: On invalid tickers, HTTP failures or unparseable data.
        """
        symbol, market = tencent_symbol(ticker)
        normalized = ticker.strip().upper()
        url = f"{TENCENT_QUOTE_URL}{symbol}"
        client = await self._get_client()

        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise QuoteError(
                f"Quote API error: {e.response.status_code}",
                context={"ticker": normalized, "url": url, "status_code": e.response.status_code},
            ) from e
        except httpx.RequestError as e:
            raise QuoteError(
                f"Failed to fetch quote for {normalized}: {e}",
                context={"ticker": normalized, "url": url},
            ) from e

        try:
            text = response.content.decode("gbk")
        except UnicodeDecodeError:
            logger.warning("GBK decode failed, falling back to UTF-8", ticker=normalized)
            text = response.content.decode("utf-8", errors="replace")

        quote = parse_tencent_response(text, normalized, market)
        logger.debug("Fetched quote", ticker=normalized, price=quote.price, market=market.value)
        return quote
