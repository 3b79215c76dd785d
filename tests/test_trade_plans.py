import asyncio
import json

import httpx
import pytest

from quotefeed.infrastructure.llm.strategy_client import StrategyClient, StrategyClientError, parse_trade_plan
from quotefeed.infrastructure.utils.timeutils import ms_to_datetime
from quotefeed.models.market_models import Candle
from quotefeed.models.plan_models import TradePlan
from quotefeed.services.planning.position_sizing import build_trade_plan_notes, calculate_position_size
from quotefeed.services.planning.trade_plan_cache import TradePlanCache, TradePlanService


class Clock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def candles(n):
    return [
        Candle(
            symbol="AAPL",
            timeframe="5m",
            open_time=ms_to_datetime(i * 300_000),
            open=100 + i,
            high=101 + i,
            low=99 + i,
            close=100.5 + i,
            volume=10,
            is_complete=True,
        )
        for i in range(n)
    ]


# ---- position sizing ----
def test_position_size():
    size = calculate_position_size(account_size=10_000, risk_pct=1, entry=50, stop=48, first_target=56)
    assert size.max_risk_amount == 100
    assert size.risk_per_share == 2
    assert size.shares == 50
    assert size.risk_reward_to_t1 == 3


def test_position_size_minimum_risk_per_share():
    size = calculate_position_size(account_size=1_000, risk_pct=1, entry=50, stop=50)
    assert size.risk_per_share == 0.01
    assert size.shares == 1000
    assert size.risk_reward_to_t1 == pytest.approx(2.0)


def test_trade_plan_notes():
    notes = build_trade_plan_notes(account_size=100, risk_pct=1, entry=50, stop=40, targets=[52])
    assert len(notes) == 2
    assert "1.5" in notes[0]
    assert "0" in notes[1]
    assert build_trade_plan_notes(account_size=10_000, risk_pct=1, entry=50, stop=48, targets=[56]) == []


# ---- parsing + client ----
def test_parse_trade_plan_camel_case_and_wrapper():
    plan = parse_trade_plan("AAPL", "5m", {"plan": {
        "entry": "190.5",
        "stop": 188,
        "targets": [192, "bad", 195],
        "side": "LONG",
        "confidence": 0.7,
        "why": "trend continuation",
        "strategyChosen": "vwap_reclaim",
    }}, created_at=5.0)
    assert plan.entry == 190.5
    assert plan.targets == [192.0, 195.0]
    assert plan.side == "long"
    assert plan.rationale == ["trend continuation"]
    assert plan.strategy == "vwap_reclaim"
    assert plan.created_at == 5.0


def test_request_plan_posts_candles():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"entry": 1, "stop": 0.5, "targets": [2], "rationale": ["a", "b"]})

    async def main():
        client = StrategyClient("https://strategy.test/plan", "key", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        return await client.request_plan("AAPL", "5m", candles(3), context={"account": 1})

    plan = asyncio.run(main())
    assert seen["auth"] == "Bearer key"
    assert seen["body"]["symbol"] == "AAPL"
    assert len(seen["body"]["candleData"]["5m"]) == 3
    assert seen["body"]["context"] == {"account": 1}
    assert plan.rationale == ["a", "b"]


@pytest.mark.parametrize("response", [httpx.Response(500), httpx.Response(200, content=b"not json"), httpx.Response(200, json=[1])])
def test_request_plan_errors(response):
    async def main():
        client = StrategyClient("https://strategy.test/plan", client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: response)))
        await client.request_plan("AAPL", "5m", [])

    with pytest.raises(StrategyClientError):
        asyncio.run(main())


def test_unconfigured_client():
    client = StrategyClient("")
    assert not client.configured
    with pytest.raises(StrategyClientError):
        asyncio.run(client.request_plan("AAPL", "5m", []))


# ---- cache ----
def test_cache_freshness_and_history():
    clock = Clock()
    cache = TradePlanCache(freshness_sec=300, clock=clock)
    cache.put(TradePlan(symbol="AAPL"))
    cache.put(TradePlan(symbol="MSFT"))
    cache.put(TradePlan(symbol="AAPL", entry=2.0))

    assert [p.symbol for p in cache.history()] == ["AAPL", "MSFT"]
    assert cache.get_fresh("AAPL").entry == 2.0

    clock.t += 301
    assert not cache.is_fresh("AAPL")
    assert cache.get_fresh("AAPL") is None
    assert cache.get("AAPL") is not None

    cache.clear("AAPL")
    assert cache.get("AAPL") is None
    assert [p.symbol for p in cache.history()] == ["MSFT"]
    cache.clear_all()
    assert cache.history() == []


# ---- service ----
class FakeCandles:
    def __init__(self):
        self.requests = []

    async def get_candles(self, symbol, timeframe, limit=500):
        self.requests.append((symbol, timeframe, limit))
        return candles(250)


class FakeStrategy:
    configured = True

    def __init__(self):
        self.calls = []

    async def request_plan(self, symbol, timeframe, candles, context=None, indicators=None):
        self.calls.append((len(candles), indicators, context))
        return TradePlan(symbol=symbol, entry=1.0, timeframe=timeframe)

    async def aclose(self):
        pass


def test_service_uses_cache_until_forced():
    strategy, provider = FakeStrategy(), FakeCandles()
    service = TradePlanService(strategy, provider, TradePlanCache(clock=Clock()))

    async def main():
        await service.get_plan("AAPL", "5m")
        await service.get_plan("AAPL", "5m")
        await service.get_plan("AAPL", "5m", force=True)

    asyncio.run(main())
    assert len(strategy.calls) == 2
    n_candles, indicators, _ = strategy.calls[0]
    assert n_candles == 200
    assert indicators["warm"] is True
    assert provider.requests[0] == ("AAPL", "5m", 200)
    assert service.configured
