"""
Market data package.

- Tencent Finance quotes for US, HK and CN listings
- Free-text input resolution into ticker candidates
"""

from lcr.data.quote_client import QuoteProvider, TencentQuoteClient
from lcr.data.ticker_resolver import ResolvedTarget, ResolveResult, resolve_user_query

__all__ = [
    "QuoteProvider",
    "ResolveResult",
    "ResolvedTarget",
    "TencentQuoteClient",
    "resolve_user_query",
]
