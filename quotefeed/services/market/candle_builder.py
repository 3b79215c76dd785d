"""Build candles from ticks.

One current bar is kept per tracked (symbol, timeframe). A tick either
extends that bar or, once its timestamp crosses the bucket boundary, closes
it and opens the next one. Vendor aggregates arrive already complete and
replace the current bar when their timeframe is tracked.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from dataclasses import replace
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.infrastructure.utils.timeutils import ms_to_datetime, now_ms
from quotefeed.models.market_models import Candle, Tick
from quotefeed.services.market.timeframes import bucket_open_time, bucket_start_ms, parse_timeframe_ms

CandleListener = Callable[[str, Candle], None]

TICK_BUFFER_SIZE = 1000
MAX_COMPLETION_INTERVAL_SEC = 5.0


def ticks_to_candles(symbol: str, ticks: Iterable[Tick], timeframe: str) -> List[Candle]:
    """Group ticks by time bucket and build complete OHLCV candles.

    Ticks are sorted by timestamp first, so the close is always the
    chronologically last price of the bucket.
    """
    tf_ms = parse_timeframe_ms(timeframe)
    buckets: Dict[int, Candle] = {}

    for tick in sorted(ticks, key=lambda t: t.ts_ms):
        start = bucket_start_ms(tick.ts_ms, tf_ms)
        c = buckets.get(start)
        if c is None:
            buckets[start] = Candle(
                symbol=symbol,
                timeframe=timeframe,
                open_time=bucket_open_time(tick.ts_ms, tf_ms),
                open=tick.price,
                high=tick.price,
                low=tick.price,
                close=tick.price,
                volume=float(tick.size or 0.0),
                is_complete=True,
            )
            continue
        c.high = max(c.high, tick.price)
        c.low = min(c.low, tick.price)
        c.close = tick.price
        c.volume += float(tick.size or 0.0)

    return [buckets[k] for k in sorted(buckets)]


def rollup_candles(candles: Iterable[Candle], timeframe: str) -> List[Candle]:
    """Roll finer candles up into aligned `timeframe` buckets.

    A rolled bar is complete only when every source bar is complete and the
    sources reach the end of the bucket.
    """
    tf_ms = parse_timeframe_ms(timeframe)
    groups: Dict[int, List[Candle]] = defaultdict(list)
    for c in sorted(candles, key=lambda x: x.epoch_ms):
        groups[bucket_start_ms(c.epoch_ms, tf_ms)].append(c)

    out: List[Candle] = []
    for start in sorted(groups):
        src = groups[start]
        src_end = src[-1].epoch_ms + parse_timeframe_ms(src[-1].timeframe)
        out.append(
            Candle(
                symbol=src[0].symbol,
                timeframe=timeframe,
                open_time=ms_to_datetime(start),
                open=src[0].open,
                high=max(c.high for c in src),
                low=min(c.low for c in src),
                close=src[-1].close,
                volume=sum(c.volume for c in src),
                is_complete=all(c.is_complete for c in src) and src_end >= start + tf_ms,
            )
        )
    return out


class CandleAggregator:
    """Accumulates ticks into OHLCV candles for every tracked timeframe.

    - A new bar opens at the previous bar's close (gap-free charts) unless
      `gapless` is off or there is no usable previous close
    - Ticks older than the current bucket are dropped
    - Listener errors are logged and never interrupt tick processing
    """

    def __init__(self, *, gapless: bool = True, tick_buffer_size: int = TICK_BUFFER_SIZE) -> None:
        self._log = get_logger("candle_aggregator")
        self._gapless = gapless
        self._tick_buffer_size = tick_buffer_size
        # symbol -> timeframe -> current bar (None until the first tick)
        self._current: Dict[str, Dict[str, Optional[Candle]]] = defaultdict(dict)
        self._ticks: Dict[str, Deque[Tick]] = {}
        # (symbol, timeframe) -> start of the latest bucket emitted as complete
        self._closed_through: Dict[Tuple[str, str], int] = {}
        self._listeners: List[CandleListener] = []

    # ---- listeners ----
    def on_candle_update(self, listener: CandleListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def detach() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return detach

    def _emit(self, symbol: str, candle: Candle) -> None:
        if candle.is_complete:
            key = (symbol, candle.timeframe)
            self._closed_through[key] = max(candle.epoch_ms, self._closed_through.get(key, candle.epoch_ms))
        for listener in list(self._listeners):
            try:
                listener(symbol, candle)
            except Exception as e:
                self._log.warning("candle_listener_error", symbol=symbol, timeframe=candle.timeframe, error=str(e))

    # ---- tracking ----
    def track(self, symbol: str, timeframe: str, initial: Optional[Candle] = None) -> None:
        """Start building `timeframe` bars for `symbol`, optionally from a seed bar."""
        if initial is not None:
            tf_ms = parse_timeframe_ms(timeframe)
            initial = replace(
                initial,
                timeframe=timeframe,
                open_time=bucket_open_time(initial.epoch_ms, tf_ms),
            )
        self._current[symbol][timeframe] = initial

    def is_tracked(self, symbol: str, timeframe: str) -> bool:
        return timeframe in self._current.get(symbol, {})

    def tracked(self) -> List[tuple]:
        return [(s, tf) for s, tfs in self._current.items() for tf in tfs]

    def current_candle(self, symbol: str, timeframe: str) -> Optional[Candle]:
        return self._current.get(symbol, {}).get(timeframe)

    def cleanup(self, symbol: str, timeframe: Optional[str] = None) -> None:
        if timeframe is not None:
            self._current.get(symbol, {}).pop(timeframe, None)
            self._closed_through.pop((symbol, timeframe), None)
            return
        self._current.pop(symbol, None)
        self._closed_through = {k: v for k, v in self._closed_through.items() if k[0] != symbol}
        self._ticks.pop(symbol, None)

    # ---- input ----
    def on_tick(self, tick: Tick) -> List[Candle]:
        """Apply a tick to every tracked timeframe of its symbol.

        Returns the candles closed by this tick.
        """
        buf = self._ticks.get(tick.symbol)
        if buf is None:
            buf = deque(maxlen=self._tick_buffer_size)
            self._ticks[tick.symbol] = buf
        buf.append(tick)

        timeframes = self._current.get(tick.symbol)
        if not timeframes:
            return []

        closed: List[Candle] = []
        for timeframe in list(timeframes):
            done = self._apply_tick(tick, timeframe)
            if done is not None:
                closed.append(done)
        return closed

    def _apply_tick(self, tick: Tick, timeframe: str) -> Optional[Candle]:
        tf_ms = parse_timeframe_ms(timeframe)
        start = bucket_start_ms(tick.ts_ms, tf_ms)
        price = float(tick.price)
        size = float(tick.size or 0.0)
        current = self._current[tick.symbol].get(timeframe)

        if current is None:
            bar = Candle(
                symbol=tick.symbol,
                timeframe=timeframe,
                open_time=bucket_open_time(tick.ts_ms, tf_ms),
                open=price,
                high=price,
                low=price,
                close=price,
                volume=size,
            )
            self._current[tick.symbol][timeframe] = bar
            self._emit(tick.symbol, bar)
            return None

        current_start = current.epoch_ms

        if start == current_start:
            current.high = max(current.high, price)
            current.low = min(current.low, price)
            current.close = price
            current.volume += size
            self._emit(tick.symbol, current)
            return None

        if start < current_start:
            self._log.debug("late_tick_dropped", symbol=tick.symbol, timeframe=timeframe, ts_ms=tick.ts_ms)
            return None

        # Bucket boundary crossed -> close previous bar (unless the completion
        # check already did), open the next one
        closed: Optional[Candle] = None
        if not current.is_complete:
            closed = replace(current, is_complete=True)
            self._emit(tick.symbol, closed)

        open_price = current.close if (self._gapless and current.close > 0) else price
        bar = Candle(
            symbol=tick.symbol,
            timeframe=timeframe,
            open_time=bucket_open_time(tick.ts_ms, tf_ms),
            open=open_price,
            high=max(open_price, price),
            low=min(open_price, price),
            close=price,
            volume=size,
        )
        self._current[tick.symbol][timeframe] = bar
        self._emit(tick.symbol, bar)
        return closed

    def on_vendor_bar(self, candle: Candle) -> None:
        """Store and emit a complete bar delivered by the vendor.

        A bar for a bucket that was already closed (by a boundary tick or the
        completion check) is dropped so each bucket closes once.
        """
        bar = replace(candle, is_complete=True)
        closed_through = self._closed_through.get((bar.symbol, bar.timeframe))
        if closed_through is not None and bar.epoch_ms <= closed_through:
            self._log.debug("vendor_bar_already_closed", symbol=bar.symbol, timeframe=bar.timeframe, time=bar.epoch_ms)
            return
        timeframes = self._current.get(bar.symbol, {})
        current = timeframes.get(bar.timeframe)
        # Only tracked timeframes keep a buffer entry; an aggregate for an
        # already superseded bucket must not replace the open bar
        if bar.timeframe in timeframes and (current is None or bar.epoch_ms >= current.epoch_ms):
            self._current[bar.symbol][bar.timeframe] = bar
        self._emit(bar.symbol, bar)

    # ---- completion ----
    def check_completion(self, now: Optional[int] = None) -> List[Candle]:
        """Mark bars whose bucket has ended as complete, even without a new tick."""
        now = now_ms() if now is None else now
        completed: List[Candle] = []
        for symbol, timeframes in list(self._current.items()):
            for timeframe, bar in list(timeframes.items()):
                if bar is None or bar.is_complete:
                    continue
                if now >= bar.epoch_ms + parse_timeframe_ms(timeframe):
                    bar.is_complete = True
                    completed.append(bar)
                    self._emit(symbol, bar)
        return completed

    def completion_interval_sec(self) -> float:
        durations = [parse_timeframe_ms(tf) for _, tf in self.tracked()]
        if not durations:
            return MAX_COMPLETION_INTERVAL_SEC
        return min(min(durations) / 10_000.0, MAX_COMPLETION_INTERVAL_SEC)

    async def run_completion_loop(self, stop_evt: asyncio.Event) -> None:
        while not stop_evt.is_set():
            try:
                await asyncio.wait_for(stop_evt.wait(), timeout=self.completion_interval_sec())
            except asyncio.TimeoutError:
                pass
            self.check_completion()

    # ---- history ----
    def build_candles_from_ticks(self, symbol: str, timeframe: str, count: int = 100) -> List[Candle]:
        """Re-bucket the buffered ticks of `symbol`; returns the last `count` bars."""
        ticks = self._ticks.get(symbol)
        if not ticks:
            return []
        return ticks_to_candles(symbol, list(ticks), timeframe)[-count:]
