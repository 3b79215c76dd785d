"""Provider fallback for quotes.

The primary provider serves bulk and single quotes. Only a rate-limit error
switches to the secondary provider; every other failure propagates.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Dict, Iterable, Optional, Protocol

from quotefeed.infrastructure.http.quote_api import RateLimitError
from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.models.market_models import Quote
from quotefeed.services.market.quote_cache import QuoteCache

_RATE_LIMIT_RE = re.compile(r"\b429\b|rate ?limit", re.IGNORECASE)


class BulkQuoteProvider(Protocol):
    async def fetch_bulk_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]: ...

    async def fetch_single_quote(self, symbol: str) -> Quote: ...


class SingleQuoteProvider(Protocol):
    async def fetch_single_quote(self, symbol: str) -> Quote: ...


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    return bool(_RATE_LIMIT_RE.search(str(exc)))


class QuoteFetcher:
    def __init__(
        self,
        primary: BulkQuoteProvider,
        secondary: SingleQuoteProvider,
        *,
        cache: Optional[QuoteCache] = None,
        concurrency: int = 10,
    ) -> None:
        self._log = get_logger("quote_fetcher")
        self._primary = primary
        self._secondary = secondary
        self._cache = cache
        self._concurrency = max(1, concurrency)

    async def safe_fetch_bulk_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        symbols = list(symbols)
        if not symbols:
            return {}
        try:
            return await self._primary.fetch_bulk_quotes(symbols)
        except Exception as e:
            if not is_rate_limit_error(e):
                raise
            self._log.warning("bulk_quotes_rate_limited", symbols=len(symbols), error=str(e))
            return await self._fetch_secondary_bulk(symbols)

    async def _fetch_secondary_bulk(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        sem = asyncio.Semaphore(self._concurrency)

        async def one(symbol: str) -> Quote:
            async with sem:
                try:
                    return await self._secondary.fetch_single_quote(symbol)
                except Exception as e:
                    self._log.warning("fallback_quote_failed", symbol=symbol, error=str(e))
                    return Quote.placeholder(symbol, updated=int(time.time()))

        symbols = list(symbols)
        quotes = await asyncio.gather(*(one(s) for s in symbols))
        return dict(zip(symbols, quotes))

    async def safe_fetch_single_quote(self, symbol: str) -> Quote:
        try:
            return await self._primary.fetch_single_quote(symbol)
        except Exception as e:
            if not is_rate_limit_error(e):
                raise
            self._log.warning("single_quote_rate_limited", symbol=symbol, error=str(e))
            return await self._secondary.fetch_single_quote(symbol)

    async def fetch_and_cache_bulk_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        quotes = await self.safe_fetch_bulk_quotes(symbols)
        if self._cache is not None and quotes:
            self._cache.save_quotes(quotes)
        return quotes

    async def aclose(self) -> None:
        for provider in (self._primary, self._secondary):
            aclose = getattr(provider, "aclose", None)
            if aclose is not None:
                await aclose()
