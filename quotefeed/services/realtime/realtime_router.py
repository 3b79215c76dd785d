"""Routes realtime subscriptions to Polygon or the simulator.

Prices from either source feed the candle aggregator and the quote cache;
Polygon aggregates feed the aggregator as complete vendor bars. The
simulator is used only in developer mode, either when selected or as the
fallback when Polygon cannot be started.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Iterable, List, Optional

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.infrastructure.polygon.polygon_ws_client import PolygonWSClient
from quotefeed.models.market_models import Candle, Tick
from quotefeed.services.market.candle_builder import CandleAggregator
from quotefeed.services.market.quote_cache import QuoteCache
from quotefeed.services.realtime.simulator import SimulatorFeed

PriceListener = Callable[[str, float, int], None]


class RealtimeRouter:
    def __init__(
        self,
        polygon: PolygonWSClient,
        simulator: SimulatorFeed,
        aggregator: CandleAggregator,
        quote_cache: Optional[QuoteCache] = None,
        *,
        provider: str = "polygon",
        developer_mode: bool = False,
    ) -> None:
        self._log = get_logger("realtime_router")
        self._polygon = polygon
        self._simulator = simulator
        self._aggregator = aggregator
        self._quote_cache = quote_cache
        self._provider = provider
        self._developer_mode = developer_mode
        self._stop_evt = asyncio.Event()
        self._completion_task: Optional[asyncio.Task[None]] = None

        polygon.on_trade(aggregator.on_tick)
        polygon.on_bar(aggregator.on_vendor_bar)
        simulator.on_price(self._on_simulated_price)
        if quote_cache is not None:
            polygon.on_price(quote_cache.record_price)
            simulator.on_price(quote_cache.record_price)

    # ---- provider ----
    @property
    def provider(self) -> str:
        return self._provider

    @property
    def developer_mode(self) -> bool:
        return self._developer_mode

    @property
    def uses_simulator(self) -> bool:
        return self._developer_mode and self._provider == "simulator"

    @property
    def aggregator(self) -> CandleAggregator:
        return self._aggregator

    def set_provider(self, provider: str, developer_mode: Optional[bool] = None) -> None:
        self._provider = provider
        if developer_mode is not None:
            self._developer_mode = developer_mode
        self._log.info("realtime_provider_set", provider=provider, developer_mode=self._developer_mode)

    def _on_simulated_price(self, symbol: str, price: float, ts_ms: int) -> None:
        self._aggregator.on_tick(Tick(symbol=symbol, price=price, ts_ms=ts_ms))

    # ---- lifecycle ----
    async def start(self) -> None:
        self._stop_evt.clear()
        if self._completion_task is None or self._completion_task.done():
            self._completion_task = asyncio.create_task(self._aggregator.run_completion_loop(self._stop_evt))

    async def stop(self) -> None:
        self._stop_evt.set()
        task = self._completion_task
        self._completion_task = None
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=2.0)
            except asyncio.TimeoutError:
                task.cancel()
        self._simulator.clear_all()
        await self._polygon.stop()

    async def _ensure_polygon(self) -> None:
        if not self._polygon.is_running:
            await self._polygon.start()

    # ---- subscriptions ----
    async def subscribe(self, symbols: Iterable[str]) -> None:
        symbols = list(symbols)
        if self.uses_simulator:
            await self._simulator.subscribe(symbols)
            await self._polygon.unsubscribe_symbols(symbols)
            return

        try:
            await self._ensure_polygon()
            await self._polygon.subscribe_trades(symbols)
            await self._polygon.subscribe_agg_minute(symbols)
            self._simulator.unsubscribe(symbols)
        except Exception as e:
            if not self._developer_mode:
                raise
            self._log.warning("polygon_unavailable_using_simulator", symbols=symbols, error=str(e))
            await self._simulator.subscribe(symbols)

    async def subscribe_for_timeframe(self, symbols: Iterable[str], timeframe: str) -> None:
        symbols = list(symbols)
        if self.uses_simulator:
            await self._simulator.subscribe(symbols)
            self._track(symbols, timeframe)
            return

        try:
            await self._ensure_polygon()
            await self._polygon.subscribe_for_timeframe(symbols, timeframe)
            self._simulator.unsubscribe(symbols)
        except Exception as e:
            if not self._developer_mode:
                raise
            self._log.warning("polygon_unavailable_using_simulator", symbols=symbols, error=str(e))
            await self._simulator.subscribe(symbols)
        self._track(symbols, timeframe)

    def _track(self, symbols: List[str], timeframe: str, initial: Optional[Candle] = None) -> None:
        for s in symbols:
            if not self._aggregator.is_tracked(s, timeframe):
                self._aggregator.track(s, timeframe, initial)

    async def unsubscribe(self, symbols: Iterable[str]) -> None:
        symbols = list(symbols)
        await self._polygon.unsubscribe_symbols(symbols)
        self._simulator.unsubscribe(symbols)
        for s in symbols:
            self._aggregator.cleanup(s)

    def unsubscribe_timeframe(self, symbols: Iterable[str], timeframe: str) -> None:
        for s in symbols:
            self._aggregator.cleanup(s, timeframe)

    async def clear_all(self) -> None:
        await self._polygon.clear_all()
        self._simulator.clear_all()

    # ---- listeners ----
    def on_price(self, listener: PriceListener) -> Callable[[], None]:
        detach_polygon = self._polygon.on_price(listener)
        detach_simulator = self._simulator.on_price(listener)

        def detach() -> None:
            detach_polygon()
            detach_simulator()

        return detach

    def on_candle(self, listener: Callable[[str, Candle], None]) -> Callable[[], None]:
        return self._aggregator.on_candle_update(listener)
