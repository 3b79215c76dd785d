import asyncio

import httpx
import pytest

from quotefeed.infrastructure.http.quote_api import (
    MarketDataQuoteAPI,
    PolygonSnapshotQuoteAPI,
    QuoteAPIError,
    RateLimitError,
)


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_bulk_quotes_maps_columns_and_scales_percent():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["symbols"] = request.url.params["symbols"]
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={
            "s": "ok",
            "symbol": ["AAPL", "MSFT"],
            "last": [190.0, 410.5],
            "change": [-0.5, 1.25],
            "changepct": [-0.0027, 0.003],
            "volume": [1000, 2000],
            "updated": [1_700_000_000, 1_700_000_001],
        })

    async def main():
        api = MarketDataQuoteAPI("tok", client=mock_client(handler))
        return await api.fetch_bulk_quotes(["AAPL", "MSFT"])

    quotes = asyncio.run(main())
    assert seen == {"path": "/v1/stocks/bulkquotes/", "symbols": "AAPL,MSFT", "auth": "Bearer tok"}
    assert quotes["AAPL"].last == 190.0
    assert quotes["AAPL"].change_percent == pytest.approx(-0.27)
    assert quotes["MSFT"].updated == 1_700_000_001


def test_bulk_quotes_empty_input_makes_no_request():
    def handler(request):
        raise AssertionError("no request expected")

    async def main():
        return await MarketDataQuoteAPI("tok", client=mock_client(handler)).fetch_bulk_quotes([])

    assert asyncio.run(main()) == {}


def test_http_429_is_rate_limit():
    async def main():
        api = MarketDataQuoteAPI("tok", client=mock_client(lambda r: httpx.Response(429)))
        await api.fetch_bulk_quotes(["AAPL"])

    with pytest.raises(RateLimitError):
        asyncio.run(main())


def test_error_status_payload():
    def handler(request):
        return httpx.Response(200, json={"s": "error", "errmsg": "Rate limit exceeded"})

    async def main():
        await MarketDataQuoteAPI("tok", client=mock_client(handler)).fetch_bulk_quotes(["AAPL"])

    with pytest.raises(RateLimitError):
        asyncio.run(main())


def test_server_error_is_quote_api_error_not_rate_limit():
    async def main():
        api = MarketDataQuoteAPI("tok", client=mock_client(lambda r: httpx.Response(500)))
        await api.fetch_single_quote("AAPL")

    with pytest.raises(QuoteAPIError) as exc:
        asyncio.run(main())
    assert not isinstance(exc.value, RateLimitError)


def test_single_quote_derives_change_from_prev_close():
    def handler(request):
        assert request.url.path == "/v1/stocks/quotes/AAPL/"
        return httpx.Response(200, json={"s": "ok", "mid": [101.0], "prevClose": [100.0], "updated": [1_700_000_000]})

    async def main():
        return await MarketDataQuoteAPI("tok", client=mock_client(handler)).fetch_single_quote("AAPL")

    q = asyncio.run(main())
    assert q.last == 101.0
    assert q.change == pytest.approx(1.0)
    assert q.change_percent == pytest.approx(1.0)
    assert q.updated == 1_700_000_000


def test_polygon_snapshot_quote():
    def handler(request):
        assert request.url.path == "/v2/snapshot/locale/us/markets/stocks/tickers/AAPL"
        assert request.url.params["apiKey"] == "pk"
        return httpx.Response(200, json={
            "status": "OK",
            "ticker": {
                "lastTrade": {"p": 191.0},
                "day": {"c": 190.5, "v": 5000},
                "prevDay": {"c": 189.0},
                "todaysChange": 2.0,
                "todaysChangePerc": 1.058,
                "updated": 1_700_000_000_123_456_789,
            },
        })

    async def main():
        return await PolygonSnapshotQuoteAPI("pk", client=mock_client(handler)).fetch_single_quote("AAPL")

    q = asyncio.run(main())
    assert q.last == 191.0
    assert q.change == 2.0
    assert q.change_percent == pytest.approx(1.058)
    assert q.volume == 5000
    assert q.updated == 1_700_000_000


def test_polygon_snapshot_requires_key():
    async def main():
        await PolygonSnapshotQuoteAPI("", client=mock_client(lambda r: httpx.Response(200, json={}))).fetch_single_quote("AAPL")

    with pytest.raises(QuoteAPIError):
        asyncio.run(main())
