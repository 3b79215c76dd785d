"""Candle cache with timeframe derivation.

One base series is kept per symbol. Requests for a timeframe at or above the
base are rolled up from it while it is fresh; anything else is fetched and
becomes the new base. Series are persisted to the key-value store so a
restart within the storage TTL does not refetch.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.infrastructure.storage.sqlite_repository import SQLiteRepository
from quotefeed.models.market_models import Candle
from quotefeed.services.market.candle_builder import rollup_candles
from quotefeed.services.market.timeframes import TIMEFRAME_MINUTES, normalize_timeframe, parse_timeframe_ms

KEY_PREFIX = "candles:"

PRELOAD_TIMEFRAME = "5m"
PRELOAD_LIMIT = 2000
UPDATE_MIN_INTERVAL_SEC = 5.0
MAX_INCREMENTAL_GAP_SEC = 24 * 60 * 60
MAX_INCREMENTAL_BARS = 100


class CandleSource(Protocol):
    async def fetch_candles_for_timeframe(self, symbol: str, timeframe: str, out_bars: int = 500) -> List[Candle]: ...


@dataclass
class CandleSeries:
    symbol: str
    base_timeframe: str
    data: List[Candle] = field(default_factory=list)
    last_update: float = 0.0      # epoch seconds
    last_candle_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "base_timeframe": self.base_timeframe,
            "data": [c.to_dict() for c in self.data],
            "last_update": self.last_update,
            "last_candle_ms": self.last_candle_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandleSeries":
        return cls(
            symbol=str(data["symbol"]),
            base_timeframe=str(data["base_timeframe"]),
            data=[Candle.from_dict(c) for c in data.get("data") or []],
            last_update=float(data.get("last_update") or 0.0),
            last_candle_ms=int(data.get("last_candle_ms") or 0),
        )


class CandleManager:
    def __init__(
        self,
        fetcher: CandleSource,
        repo: Optional[SQLiteRepository] = None,
        *,
        cache_ttl_sec: float = 1800.0,
        storage_ttl_sec: float = 3600.0,
        base_timeframe: str = PRELOAD_TIMEFRAME,
        preload_limit: int = PRELOAD_LIMIT,
        max_cached: int = 2000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._log = get_logger("candle_manager")
        self._fetcher = fetcher
        self._repo = repo
        self._cache_ttl = cache_ttl_sec
        self._storage_ttl = storage_ttl_sec
        self._base_timeframe = base_timeframe
        self._preload_limit = preload_limit
        self._max_cached = max_cached
        self._clock = clock
        self._cache: Dict[str, CandleSeries] = {}
        self._inflight: Dict[str, "asyncio.Task[List[Candle]]"] = {}

    # ---- persistence ----
    def _ensure_loaded(self, symbol: str) -> None:
        if symbol in self._cache or self._repo is None:
            return
        try:
            stored = self._repo.kv_get(KEY_PREFIX + symbol)
            if stored is None:
                return
            value, _ = stored
            series = CandleSeries.from_dict(value)
            if self._clock() - series.last_update < self._storage_ttl:
                self._cache[symbol] = series
            else:
                self._repo.kv_delete(KEY_PREFIX + symbol)
        except Exception as e:
            self._log.warning("candle_cache_load_failed", symbol=symbol, error=str(e))

    def _save(self, series: CandleSeries) -> None:
        if self._repo is None:
            return
        try:
            self._repo.kv_set(KEY_PREFIX + series.symbol, series.to_dict(), saved_at=series.last_update)
        except Exception as e:
            self._log.warning("candle_cache_persist_failed", symbol=series.symbol, error=str(e))

    def _is_stale(self, series: CandleSeries) -> bool:
        return self._clock() - series.last_update > self._cache_ttl

    # ---- reads ----
    async def get_candles(self, symbol: str, timeframe: str, limit: int = 500) -> List[Candle]:
        tf = normalize_timeframe(timeframe)
        self._ensure_loaded(symbol)

        derived = self._try_derive(symbol, tf, limit)
        if derived:
            self._log.debug("candles_derived", symbol=symbol, timeframe=tf, count=len(derived))
            return derived

        return await self._fetch_and_cache(symbol, tf, limit)

    def _try_derive(self, symbol: str, target: str, limit: int) -> Optional[List[Candle]]:
        series = self._cache.get(symbol)
        if series is None or self._is_stale(series):
            return None

        base_minutes = TIMEFRAME_MINUTES.get(series.base_timeframe)
        target_minutes = TIMEFRAME_MINUTES.get(target)
        if not base_minutes or not target_minutes or target_minutes < base_minutes:
            return None

        if target_minutes == base_minutes:
            return series.data[-limit:]
        return rollup_candles(series.data, target)[-limit:]

    async def _fetch_and_cache(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        key = f"{symbol}:{timeframe}"
        existing = self._inflight.get(key)
        if existing is not None:
            return await existing

        task = asyncio.ensure_future(self._fetcher.fetch_candles_for_timeframe(symbol, timeframe, limit))
        self._inflight[key] = task
        try:
            candles = await task
        finally:
            self._inflight.pop(key, None)

        series = CandleSeries(
            symbol=symbol,
            base_timeframe=timeframe,
            data=list(candles),
            last_update=self._clock(),
            last_candle_ms=candles[-1].epoch_ms if candles else 0,
        )
        self._cache[symbol] = series
        self._save(series)
        return candles

    # ---- refresh ----
    async def preload_symbol(self, symbol: str) -> None:
        try:
            await self._fetch_and_cache(symbol, self._base_timeframe, self._preload_limit)
            self._log.info("symbol_preloaded", symbol=symbol, timeframe=self._base_timeframe)
        except Exception as e:
            self._log.error("symbol_preload_failed", symbol=symbol, error=str(e))

    async def update_symbol(self, symbol: str) -> None:
        self._ensure_loaded(symbol)
        series = self._cache.get(symbol)
        if series is None:
            await self.preload_symbol(symbol)
            return

        if self._clock() - series.last_update < UPDATE_MIN_INTERVAL_SEC:
            return

        try:
            recent = await self._fetch_recent(series)
            if recent:
                self._merge(series, recent)
                self._save(series)
                self._log.debug("symbol_updated", symbol=symbol, received=len(recent))
        except Exception as e:
            self._log.warning("symbol_update_failed", symbol=symbol, error=str(e))
            await self.preload_symbol(symbol)

    async def _fetch_recent(self, series: CandleSeries) -> List[Candle]:
        gap_ms = self._clock() * 1000 - series.last_candle_ms
        if gap_ms > MAX_INCREMENTAL_GAP_SEC * 1000:
            return await self._fetcher.fetch_candles_for_timeframe(series.symbol, series.base_timeframe, self._preload_limit)

        bar_ms = parse_timeframe_ms(series.base_timeframe)
        needed = max(1, math.ceil(gap_ms / bar_ms) + 1)
        return await self._fetcher.fetch_candles_for_timeframe(
            series.symbol, series.base_timeframe, min(MAX_INCREMENTAL_BARS, needed)
        )

    def _merge(self, series: CandleSeries, fresh: List[Candle]) -> None:
        last_ms = series.data[-1].epoch_ms if series.data else 0
        if series.data:
            for c in fresh:
                if c.epoch_ms == last_ms:
                    series.data[-1] = c
                    break

        newer = [c for c in fresh if c.epoch_ms > last_ms]
        series.data.extend(newer)
        if len(series.data) > self._max_cached:
            series.data = series.data[-self._max_cached:]

        series.last_update = self._clock()
        if newer:
            series.last_candle_ms = newer[-1].epoch_ms

    # ---- housekeeping ----
    def cleanup(self) -> List[str]:
        removed: List[str] = []
        for symbol, series in list(self._cache.items()):
            if self._is_stale(series):
                del self._cache[symbol]
                removed.append(symbol)
                if self._repo is not None:
                    try:
                        self._repo.kv_delete(KEY_PREFIX + symbol)
                    except Exception as e:
                        self._log.warning("candle_cache_delete_failed", symbol=symbol, error=str(e))
        if self._repo is not None:
            try:
                self._repo.kv_delete_prefix(KEY_PREFIX, older_than=self._clock() - self._storage_ttl)
            except Exception as e:
                self._log.warning("candle_storage_cleanup_failed", error=str(e))
        if removed:
            self._log.info("candle_cache_cleaned", symbols=removed)
        return removed

    def stats(self) -> Dict[str, int]:
        return {
            "symbols": len(self._cache),
            "total_candles": sum(len(s.data) for s in self._cache.values()),
        }

    def series(self, symbol: str) -> Optional[CandleSeries]:
        return self._cache.get(symbol)

    async def aclose(self) -> None:
        aclose = getattr(self._fetcher, "aclose", None)
        if aclose is not None:
            await aclose()
