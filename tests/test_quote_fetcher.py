import asyncio

import pytest

from quotefeed.infrastructure.http.quote_api import QuoteAPIError, RateLimitError
from quotefeed.models.market_models import Quote
from quotefeed.services.market.quote_cache import QuoteCache
from quotefeed.services.market.quote_fetcher import QuoteFetcher, is_rate_limit_error


class FakePrimary:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    async def fetch_bulk_quotes(self, symbols):
        self.calls += 1
        if self.error:
            raise self.error
        return {s: Quote(symbol=s, last=10.0) for s in symbols}

    async def fetch_single_quote(self, symbol):
        if self.error:
            raise self.error
        return Quote(symbol=symbol, last=10.0)


class FakeSecondary:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.requested = []

    async def fetch_single_quote(self, symbol):
        self.requested.append(symbol)
        if symbol in self.fail:
            raise QuoteAPIError("not found")
        return Quote(symbol=symbol, last=20.0)


def test_is_rate_limit_error():
    assert is_rate_limit_error(RateLimitError("x"))
    assert is_rate_limit_error(RuntimeError("HTTP 429 Too Many Requests"))
    assert is_rate_limit_error(RuntimeError("Rate limit exceeded"))
    assert not is_rate_limit_error(RuntimeError("HTTP 500"))


def test_primary_success_skips_secondary():
    secondary = FakeSecondary()
    fetcher = QuoteFetcher(FakePrimary(), secondary)
    quotes = asyncio.run(fetcher.safe_fetch_bulk_quotes(["AAPL"]))
    assert quotes["AAPL"].last == 10.0
    assert secondary.requested == []


def test_empty_symbols():
    primary = FakePrimary()
    assert asyncio.run(QuoteFetcher(primary, FakeSecondary()).safe_fetch_bulk_quotes([])) == {}
    assert primary.calls == 0


def test_rate_limit_falls_back_per_symbol_with_placeholders():
    secondary = FakeSecondary(fail={"MSFT"})
    fetcher = QuoteFetcher(FakePrimary(RateLimitError("429")), secondary, concurrency=2)
    quotes = asyncio.run(fetcher.safe_fetch_bulk_quotes(["AAPL", "MSFT", "NVDA"]))

    assert set(quotes) == {"AAPL", "MSFT", "NVDA"}
    assert quotes["AAPL"].last == 20.0
    assert quotes["MSFT"].last == 0.0 and quotes["MSFT"].change == 0.0
    assert sorted(secondary.requested) == ["AAPL", "MSFT", "NVDA"]


def test_other_errors_propagate():
    fetcher = QuoteFetcher(FakePrimary(QuoteAPIError("HTTP 500")), FakeSecondary())
    with pytest.raises(QuoteAPIError):
        asyncio.run(fetcher.safe_fetch_bulk_quotes(["AAPL"]))
    with pytest.raises(QuoteAPIError):
        asyncio.run(fetcher.safe_fetch_single_quote("AAPL"))


def test_single_quote_fallback():
    fetcher = QuoteFetcher(FakePrimary(RuntimeError("rate limit")), FakeSecondary())
    assert asyncio.run(fetcher.safe_fetch_single_quote("AAPL")).last == 20.0


def test_fetch_and_cache_saves():
    cache = QuoteCache()
    fetcher = QuoteFetcher(FakePrimary(), FakeSecondary(), cache=cache)
    asyncio.run(fetcher.fetch_and_cache_bulk_quotes(["AAPL"]))
    assert cache.is_fresh("AAPL")


class SlowSecondary:
    def __init__(self):
        self.in_flight = 0
        self.peak = 0

    async def fetch_single_quote(self, symbol):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return Quote(symbol=symbol, last=20.0)
        finally:
            self.in_flight -= 1


def test_fallback_keeps_at_most_concurrency_requests_in_flight():
    secondary = SlowSecondary()
    fetcher = QuoteFetcher(FakePrimary(RateLimitError("429")), secondary, concurrency=3)
    symbols = [f"S{i}" for i in range(12)]

    quotes = asyncio.run(fetcher.safe_fetch_bulk_quotes(symbols))

    assert list(quotes) == symbols
    assert secondary.peak == 3
