import pytest
from fastapi.testclient import TestClient

from quotefeed.api.server import create_app
from quotefeed.api.state import ApiState
from quotefeed.infrastructure.http.candle_api import CandleProviderError
from quotefeed.infrastructure.http.quote_api import QuoteAPIError
from quotefeed.infrastructure.llm.strategy_client import StrategyClientError
from quotefeed.infrastructure.storage.sqlite_repository import SQLiteRepository
from quotefeed.infrastructure.utils.config import QuoteFeedConfig
from quotefeed.infrastructure.utils.timeutils import ms_to_datetime
from quotefeed.models.market_models import Candle, Quote
from quotefeed.models.plan_models import TradePlan
from quotefeed.services.market.candle_manager import CandleManager
from quotefeed.services.market.quote_cache import QuoteCache
from quotefeed.services.market.quote_fetcher import QuoteFetcher
from quotefeed.services.monitoring.metrics_store import write_metrics
from quotefeed.services.planning.trade_plan_cache import TradePlanService
from quotefeed.services.realtime.watchlist_monitor import WatchlistMonitor


class FakeQuotes:
    def __init__(self):
        self.error = None

    async def fetch_bulk_quotes(self, symbols):
        if self.error:
            raise self.error
        return {s: Quote(symbol=s, last=42.0, updated=1) for s in symbols}

    async def fetch_single_quote(self, symbol):
        return Quote(symbol=symbol, last=42.0)


class FakeCandleSource:
    def __init__(self):
        self.error = None

    async def fetch_candles_for_timeframe(self, symbol, timeframe, out_bars=500):
        if self.error:
            raise self.error
        return [
            Candle(
                symbol=symbol,
                timeframe=timeframe,
                open_time=ms_to_datetime(i * 300_000),
                open=10 + i,
                high=11 + i,
                low=9 + i,
                close=10.5 + i,
                volume=5,
                is_complete=True,
            )
            for i in range(30)
        ][-out_bars:]


class FakeStrategy:
    def __init__(self, configured=True):
        self.configured = configured
        self.error = None

    async def request_plan(self, symbol, timeframe, candles, context=None, indicators=None):
        if self.error:
            raise self.error
        return TradePlan(symbol=symbol, entry=10.0, stop=9.0, targets=[12.0], timeframe=timeframe)

    async def aclose(self):
        pass


@pytest.fixture
def env(tmp_path):
    config = QuoteFeedConfig()
    repo = SQLiteRepository(tmp_path / "api.db")
    cache = QuoteCache(repo)
    quotes_api = FakeQuotes()
    candle_source = FakeCandleSource()
    strategy = FakeStrategy()
    fetcher = QuoteFetcher(quotes_api, quotes_api, cache=cache)
    state = ApiState(
        config=config,
        repo=repo,
        quote_cache=cache,
        quotes=fetcher,
        candles=CandleManager(candle_source, repo),
        trade_plans=TradePlanService(strategy, CandleManager(candle_source)),
        metrics_path=tmp_path / "metrics.json",
        runtime_config_path=tmp_path / "runtime.json",
        watchlist=WatchlistMonitor(fetcher, None, poll_interval_sec=60),
    )
    with TestClient(create_app(config, state)) as client:
        yield client, state, quotes_api, candle_source, strategy


def test_health(env):
    client, *_ = env
    assert client.get("/health").json() == {"ok": True}


def test_metrics_and_events(env):
    client, state, *_ = env
    assert client.get("/metrics").json()["connected"] is False

    write_metrics({"connected": True, "ticks_received": 3}, state.metrics_path)
    assert client.get("/metrics").json()["ticks_received"] == 3

    state.repo.log_event(ts="t", level="INFO", type="ws_reconnected", message="back", data={})
    assert client.get("/events", params={"limit": 5}).json()[0]["type"] == "ws_reconnected"


def test_quotes_refresh_then_cached(env):
    client, *_ = env
    assert client.get("/quotes", params={"symbols": "AAPL"}).json() == {"quotes": {}, "fresh": []}

    resp = client.post("/quotes/refresh", json={"symbols": ["aapl", "msft"]})
    assert resp.status_code == 200
    assert set(resp.json()["quotes"]) == {"AAPL", "MSFT"}

    cached = client.get("/quotes", params={"symbols": "AAPL, MSFT,NVDA"}).json()
    assert cached["quotes"]["AAPL"]["last"] == 42.0
    assert sorted(cached["fresh"]) == ["AAPL", "MSFT"]


def test_quotes_refresh_provider_error(env):
    client, _, quotes_api, *_ = env
    quotes_api.error = QuoteAPIError("HTTP 500")
    assert client.post("/quotes/refresh", json={"symbols": ["AAPL"]}).status_code == 502


def test_candles_and_derived_timeframe(env):
    client, *_ = env
    body = client.get("/candles/aapl", params={"timeframe": "5m", "limit": 10}).json()
    assert body["symbol"] == "AAPL"
    assert len(body["candles"]) == 10

    rolled = client.get("/candles/AAPL", params={"timeframe": "15m"}).json()["candles"]
    assert rolled[0]["timeframe"] == "15m"


def test_candles_provider_error(env):
    client, _, _, candle_source, _ = env
    candle_source.error = CandleProviderError("yahoo HTTP 503")
    assert client.get("/candles/ZZZZ").status_code == 502


def test_indicators(env):
    client, *_ = env
    body = client.get("/indicators/AAPL", params={"name": "EMA", "params": "3,5"}).json()
    assert body["indicator"]["calc_params"] == [3, 5]
    assert len(body["series"]) == 2
    assert len(body["series"][0]) == len(body["times"])

    assert client.get("/indicators/AAPL", params={"name": "KDJ"}).status_code == 400
    assert client.get("/indicators/AAPL", params={"name": "MA", "params": "0"}).status_code == 400
    assert client.get("/indicators/AAPL", params={"name": "EMA", "params": "-5"}).status_code == 400


def test_trade_plans(env):
    client, _, _, _, strategy = env
    body = client.get("/trade-plans/aapl", params={"timeframe": "5m"}).json()
    assert body["symbol"] == "AAPL" and body["targets"] == [12.0]

    strategy.error = StrategyClientError("HTTP 500")
    # cached plan is still fresh
    assert client.get("/trade-plans/AAPL").status_code == 200
    assert client.get("/trade-plans/AAPL", params={"force": "true"}).status_code == 502

    strategy.configured = False
    assert client.get("/trade-plans/AAPL").status_code == 503


def test_provider_override(env):
    client, *_ = env
    assert client.get("/config/provider").json() == {"provider": "polygon", "developer_mode": False}
    assert client.post("/config/provider", json={"provider": "nasdaq"}).status_code == 400

    resp = client.post("/config/provider", json={"provider": "Simulator", "developer_mode": True})
    assert resp.json() == {"provider": "simulator", "developer_mode": True}
    assert client.get("/config/provider").json()["provider"] == "simulator"


def test_watchlist_start_preload_and_stop(env):
    client, state, *_ = env
    assert client.get("/watchlist").json() == {"symbols": [], "realtime": False, "prices": {}}

    body = client.put("/watchlist", json={"symbols": ["aapl", "msft", "AAPL", " "]}).json()
    assert body["symbols"] == ["AAPL", "MSFT"]
    assert body["realtime"] is False
    assert body["prices"] == {"AAPL": 42.0, "MSFT": 42.0}
    assert state.quote_cache.is_fresh("MSFT")

    assert client.delete("/watchlist").json() == {"symbols": [], "realtime": False, "prices": {}}


def test_watchlist_not_configured(env):
    client, state, *_ = env
    state.watchlist = None
    assert client.get("/watchlist").status_code == 503
    assert client.put("/watchlist", json={"symbols": ["AAPL"]}).status_code == 503
