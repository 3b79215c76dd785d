"""Developer-mode tick source: one random-walk task per symbol."""

from __future__ import annotations

import asyncio
import random
from typing import Callable, Dict, Iterable, List, Optional

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.infrastructure.utils.timeutils import now_ms

PriceListener = Callable[[str, float, int], None]

MIN_PRICE = 0.01


class SimulatorFeed:
    def __init__(
        self,
        *,
        volatility: float = 0.002,
        min_delay_ms: int = 50,
        max_delay_ms: int = 200,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._log = get_logger("simulator")
        self._volatility = volatility
        self._min_delay_ms = min_delay_ms
        self._max_delay_ms = max_delay_ms
        self._rng = rng or random.Random()
        self._listeners: List[PriceListener] = []
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._prices: Dict[str, float] = {}

    def on_price(self, listener: PriceListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def detach() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return detach

    def _emit(self, symbol: str, price: float, ts_ms: int) -> None:
        for listener in list(self._listeners):
            try:
                listener(symbol, price, ts_ms)
            except Exception as e:
                self._log.warning("price_listener_error", symbol=symbol, error=str(e))

    def next_price(self, symbol: str) -> float:
        current = self._prices.get(symbol)
        if current is None:
            current = 100.0 + self._rng.random() * 50.0
        drift = (self._rng.random() - 0.5) * 2 * self._volatility
        price = max(MIN_PRICE, current * (1 + drift))
        self._prices[symbol] = price
        return price

    def _next_delay(self) -> float:
        return self._rng.randint(self._min_delay_ms, self._max_delay_ms) / 1000.0

    async def _run(self, symbol: str) -> None:
        await asyncio.sleep(self._rng.randint(20, 80) / 1000.0)
        while True:
            self._emit(symbol, self.next_price(symbol), now_ms())
            await asyncio.sleep(self._next_delay())

    async def subscribe(self, symbols: Iterable[str]) -> None:
        for s in symbols:
            if s in self._tasks:
                continue
            self._tasks[s] = asyncio.create_task(self._run(s))
            self._log.info("simulator_subscribed", symbol=s)

    def unsubscribe(self, symbols: Iterable[str]) -> None:
        for s in symbols:
            task = self._tasks.pop(s, None)
            if task is not None:
                task.cancel()

    def clear_all(self) -> None:
        self.unsubscribe(list(self._tasks))

    def active_symbols(self) -> List[str]:
        return sorted(self._tasks)
