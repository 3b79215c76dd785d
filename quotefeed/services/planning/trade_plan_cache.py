"""Per-symbol trade plan cache and the service that refreshes it."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from quotefeed.infrastructure.llm.strategy_client import StrategyClient
from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.models.market_models import Candle
from quotefeed.models.plan_models import TradePlan
from quotefeed.services.market.indicators import IndicatorEngine

FRESHNESS_SEC = 300.0
HISTORY_SIZE = 100
PLAN_CANDLES = 200


class CandleProvider(Protocol):
    async def get_candles(self, symbol: str, timeframe: str, limit: int = 500) -> List[Candle]: ...


class TradePlanCache:
    """Latest plan per symbol plus a most-recent-first history (one entry per symbol)."""

    def __init__(self, *, freshness_sec: float = FRESHNESS_SEC, clock: Callable[[], float] = time.time) -> None:
        self._freshness = freshness_sec
        self._clock = clock
        self._plans: Dict[str, TradePlan] = {}
        self._history: List[TradePlan] = []

    def put(self, plan: TradePlan) -> TradePlan:
        if not plan.created_at:
            plan.created_at = self._clock()
        self._plans[plan.symbol] = plan
        self._history = [p for p in self._history if p.symbol != plan.symbol]
        self._history.insert(0, plan)
        del self._history[HISTORY_SIZE:]
        return plan

    def get(self, symbol: str) -> Optional[TradePlan]:
        return self._plans.get(symbol)

    def is_fresh(self, symbol: str) -> bool:
        plan = self._plans.get(symbol)
        return plan is not None and self._clock() - plan.created_at < self._freshness

    def get_fresh(self, symbol: str) -> Optional[TradePlan]:
        return self._plans[symbol] if self.is_fresh(symbol) else None

    def clear(self, symbol: str) -> None:
        self._plans.pop(symbol, None)
        self._history = [p for p in self._history if p.symbol != symbol]

    def clear_all(self) -> None:
        self._plans.clear()
        self._history.clear()

    def history(self) -> List[TradePlan]:
        return list(self._history)


class TradePlanService:
    def __init__(self, client: StrategyClient, candles: CandleProvider, cache: Optional[TradePlanCache] = None) -> None:
        self._log = get_logger("trade_plans")
        self._client = client
        self._candles = candles
        self._cache = cache or TradePlanCache()

    @property
    def cache(self) -> TradePlanCache:
        return self._cache

    @property
    def configured(self) -> bool:
        return self._client.configured

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_plan(
        self,
        symbol: str,
        timeframe: str,
        *,
        force: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> TradePlan:
        if not force:
            cached = self._cache.get_fresh(symbol)
            if cached is not None:
                self._log.debug("trade_plan_cache_hit", symbol=symbol)
                return cached

        candles = await self._candles.get_candles(symbol, timeframe, PLAN_CANDLES)
        plan = await self._client.request_plan(
            symbol,
            timeframe,
            candles[-PLAN_CANDLES:],
            context=context,
            indicators=indicator_snapshot(candles),
        )
        return self._cache.put(plan)


def indicator_snapshot(candles: Sequence[Candle]) -> Dict[str, Any]:
    engine = IndicatorEngine()
    last = engine.update_many(c for c in candles if c.is_complete)
    if last is None:
        return {}
    return {
        "ema_fast": last.ema_fast,
        "ema_slow": last.ema_slow,
        "atr": last.atr,
        "rsi": last.rsi,
        "warm": engine.is_ready(),
    }
