"""Watchlist last-price monitor.

With Polygon available the monitor listens to trades + second aggregates and
notifies callbacks at most once per second. Without it, quotes are polled
every second. A failed realtime subscription does not fall back to polling.
"""

from __future__ import annotations

import asyncio
import math
from typing import Callable, Dict, Iterable, List, Optional

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.infrastructure.polygon.polygon_ws_client import PolygonWSClient
from quotefeed.services.market.quote_fetcher import QuoteFetcher

RefreshCallback = Callable[[], None]

PRICE_EPSILON = 0.0001


class WatchlistMonitor:
    def __init__(
        self,
        fetcher: QuoteFetcher,
        polygon: Optional[PolygonWSClient] = None,
        *,
        chunk_size: int = 50,
        chunk_delay_sec: float = 0.1,
        poll_interval_sec: float = 1.0,
        throttle_sec: float = 1.0,
    ) -> None:
        self._log = get_logger("watchlist_monitor")
        self._fetcher = fetcher
        self._polygon = polygon
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay_sec
        self._poll_interval = poll_interval_sec
        self._throttle = throttle_sec

        self._watchlist: List[str] = []
        self._callbacks: List[RefreshCallback] = []
        self._last_prices: Dict[str, float] = {}
        self._dirty = False
        self._realtime_active = False
        self._polling = False
        self._task: Optional[asyncio.Task[None]] = None
        self._detach_price: Optional[Callable[[], None]] = None

    @property
    def polygon_enabled(self) -> bool:
        return self._polygon is not None and self._polygon.has_api_key

    # ---- callbacks ----
    def add_callback(self, callback: RefreshCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def remove_callback(self, callback: RefreshCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify(self) -> None:
        for cb in list(self._callbacks):
            try:
                cb()
            except Exception as e:
                self._log.error("refresh_callback_error", error=str(e))

    # ---- prices ----
    def _update_price(self, symbol: str, price: float) -> bool:
        prev = self._last_prices.get(symbol)
        if prev is None or abs(prev - price) >= PRICE_EPSILON:
            self._last_prices[symbol] = price
            return True
        return False

    @property
    def watchlist(self) -> List[str]:
        return list(self._watchlist)

    def get_last_prices(self) -> Dict[str, float]:
        return dict(self._last_prices)

    def is_realtime_active(self) -> bool:
        return self._realtime_active

    # ---- preload ----
    async def preload(self, symbols: Iterable[str]) -> None:
        symbols = list(symbols)
        self._watchlist = symbols
        for i in range(0, len(symbols), self._chunk_size):
            chunk = symbols[i:i + self._chunk_size]
            try:
                quotes = await self._fetcher.fetch_and_cache_bulk_quotes(chunk)
                for sym in chunk:
                    q = quotes.get(sym)
                    if q is not None and math.isfinite(q.last) and q.last > 0:
                        self._last_prices[sym] = q.last
                        self._dirty = True
            except Exception as e:
                self._log.warning("watchlist_chunk_failed", chunk=len(chunk), error=str(e))
            if i + self._chunk_size < len(symbols):
                await asyncio.sleep(self._chunk_delay)

    # ---- refresh ----
    async def start(self, watchlist: Iterable[str], callback: Optional[RefreshCallback] = None) -> None:
        self._watchlist = list(watchlist)
        self._realtime_active = False
        if callback is not None:
            self.add_callback(callback)
        await self._cancel_task()

        if self.polygon_enabled and self._watchlist:
            await self._start_realtime()
            return

        self._last_prices = {}
        self._dirty = False
        if self._watchlist:
            self._task = asyncio.create_task(self._poll_loop())

    async def _start_realtime(self) -> None:
        polygon = self._polygon
        assert polygon is not None
        try:
            await polygon.clear_all()
            if not polygon.is_running:
                await polygon.start()
            await polygon.subscribe_trades(self._watchlist)
            await polygon.subscribe_agg_second(self._watchlist)
        except Exception as e:
            self._log.warning("watchlist_realtime_failed", error=str(e))
            self._realtime_active = False
            return

        self._detach()
        watched = set(self._watchlist)
        self._last_prices = {}
        self._dirty = False

        def on_price(symbol: str, price: float, ts_ms: int) -> None:
            if symbol in watched and self._update_price(symbol, price):
                self._dirty = True

        self._detach_price = polygon.on_price(on_price)
        self._task = asyncio.create_task(self._throttle_loop())
        self._realtime_active = True
        self._log.info("watchlist_realtime_started", symbols=len(self._watchlist))

    async def _throttle_loop(self) -> None:
        while True:
            await asyncio.sleep(self._throttle)
            if not self._dirty:
                continue
            self._dirty = False
            self._notify()

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            await self.poll_once()

    async def poll_once(self) -> bool:
        """One quote poll; returns True when any price moved. Skipped while a poll is running."""
        if self._polling:
            return False
        self._polling = True
        try:
            symbols = list(self._watchlist)
            if not symbols:
                return False
            quotes = await self._fetcher.safe_fetch_bulk_quotes(symbols)
            changed = False
            for sym in symbols:
                q = quotes.get(sym)
                if q is None or not math.isfinite(q.last) or q.last <= 0:
                    continue
                if self._update_price(sym, q.last):
                    changed = True
            if changed:
                self._notify()
            return changed
        except Exception as e:
            self._log.warning("watchlist_poll_failed", error=str(e))
            return False
        finally:
            self._dirty = False
            self._polling = False

    def _detach(self) -> None:
        if self._detach_price is not None:
            self._detach_price()
            self._detach_price = None

    async def _cancel_task(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def stop(self) -> None:
        await self._cancel_task()
        self._detach()
        if self.polygon_enabled and self._polygon is not None:
            await self._polygon.clear_all()
        self._polling = False
        self._watchlist = []
        self._last_prices = {}
        self._dirty = False
        self._realtime_active = False
        self._callbacks = []

    async def aclose(self) -> None:
        await self.stop()
        if self._polygon is not None and self._polygon.is_running:
            await self._polygon.stop()
