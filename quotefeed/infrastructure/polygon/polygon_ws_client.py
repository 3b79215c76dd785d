"""Polygon WebSocket client (robust) using asyncio + websockets.

Features:
- Authenticate with API key (auth action -> auth_success status)
- Heartbeat (ping) task
- Reconnection with exponential backoff + jitter, forever until stop()
- Pending channel sets (T / A / AM) replayed after every reconnect
- Frames classified by MessageRouter and fanned out to price/trade/bar listeners
"""

from __future__ import annotations

import asyncio
import json
import random
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.infrastructure.polygon.message_router import (
    KIND_AGGREGATE,
    KIND_STATUS,
    KIND_TRADE,
    AggregateEvent,
    MessageRouter,
    StatusEvent,
    TradeEvent,
)
from quotefeed.models.market_models import Candle, Tick
from quotefeed.services.market.timeframes import is_second_timeframe

JsonDict = Dict[str, Any]
PriceListener = Callable[[str, float, int], None]

CHANNEL_TRADES = "T"
CHANNEL_AGG_SECOND = "A"
CHANNEL_AGG_MINUTE = "AM"
CHANNELS = (CHANNEL_TRADES, CHANNEL_AGG_SECOND, CHANNEL_AGG_MINUTE)


class PolygonWSError(RuntimeError):
    pass


class PolygonWSClient:
    def __init__(
        self,
        api_key: str,
        websocket_url: str = "wss://socket.polygon.io/stocks",
        *,
        heartbeat_interval_sec: float = 30.0,
        auth_timeout_sec: float = 10.0,
        initial_backoff_sec: float = 0.5,
        max_reconnect_backoff_sec: float = 10.0,
        router: Optional[MessageRouter] = None,
    ) -> None:
        self._logger = get_logger("polygon_ws")
        self._url = websocket_url
        self._api_key = api_key
        self._heartbeat_interval = heartbeat_interval_sec
        self._auth_timeout = auth_timeout_sec
        self._initial_backoff = initial_backoff_sec
        self._max_backoff = max_reconnect_backoff_sec
        self._backoff = initial_backoff_sec

        self._ws: Optional[ClientConnection] = None
        self._router = router or MessageRouter()
        self._connected_evt = asyncio.Event()
        self._stop_evt = asyncio.Event()

        self._runner_task: Optional[asyncio.Task[None]] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

        self._pending: Dict[str, Set[str]] = {ch: set() for ch in CHANNELS}
        self._price_listeners: List[PriceListener] = []
        self._trade_listeners: List[Callable[[Tick], None]] = []
        self._bar_listeners: List[Callable[[Candle], None]] = []
        self._connections = 0

        self._router.add_listener(KIND_TRADE, self._on_trade_event)
        self._router.add_listener(KIND_AGGREGATE, self._on_aggregate_event)

    # ---- state ----
    @property
    def is_connected(self) -> bool:
        return self._connected_evt.is_set()

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    @property
    def is_running(self) -> bool:
        return self._runner_task is not None and not self._runner_task.done()

    @property
    def connection_count(self) -> int:
        """Number of successful authentications so far (1 + reconnects)."""
        return self._connections

    @property
    def router(self) -> MessageRouter:
        return self._router

    # ---- lifecycle ----
    async def start(self) -> None:
        if not self._api_key:
            raise PolygonWSError("Polygon API key missing. Set polygon.api_key or POLYGON__API_KEY.")
        if self.is_running:
            return
        self._stop_evt.clear()
        self._runner_task = asyncio.create_task(self._run_forever())

    async def stop(self) -> None:
        self._stop_evt.set()
        runner = self._runner_task
        self._runner_task = None
        if runner is not None and not runner.done():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        await self._disconnect()

    async def wait_until_connected(self, timeout: float = 30.0) -> None:
        await asyncio.wait_for(self._connected_evt.wait(), timeout=timeout)

    async def _run_forever(self) -> None:
        self._backoff = self._initial_backoff
        while not self._stop_evt.is_set():
            try:
                await self._connect_and_run()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("ws_loop_error", error=str(e))

            if self._stop_evt.is_set():
                break

            sleep_for = self._next_reconnect_delay()
            self._logger.warning("reconnect_backoff", seconds=round(sleep_for, 3))
            await asyncio.sleep(sleep_for)

    def _next_reconnect_delay(self) -> float:
        """Current backoff plus up to 30% jitter, capped; doubles the backoff for next time."""
        jitter = random.random() * 0.3 * self._backoff
        sleep_for = min(self._max_backoff, self._backoff + jitter)
        self._backoff = min(self._max_backoff, self._backoff * 2)
        return sleep_for

    async def _connect_and_run(self) -> None:
        self._logger.info("ws_connect", url=self._url)

        async with connect(
            self._url,
            ping_interval=None,  # heartbeat is managed by _heartbeat_loop
            close_timeout=5,
            max_queue=256,
        ) as ws:
            self._ws = ws
            try:
                await self._authenticate(ws)

                self._backoff = self._initial_backoff
                self._connections += 1
                self._connected_evt.set()
                self._logger.info("ws_authorized", connections=self._connections)

                # Re-activate every pending channel after (re)connect
                await self._flush_subscriptions()

                self._reader_task = asyncio.create_task(self._reader_loop(ws))
                self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
                tasks = [self._reader_task, self._heartbeat_task]
                try:
                    done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    for t in tasks:
                        if not t.done():
                            t.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)

                for t in done:
                    if t.cancelled():
                        continue
                    exc = t.exception()
                    if exc:
                        raise exc

                self._logger.warning("ws_closed")
            finally:
                self._connected_evt.clear()
                self._reader_task = None
                self._heartbeat_task = None
                self._ws = None

    async def _authenticate(self, ws: ClientConnection) -> None:
        await ws.send(json.dumps({"action": "auth", "params": self._api_key}))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._auth_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PolygonWSError("Auth timeout")
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=remaining)
            except asyncio.TimeoutError as e:
                raise PolygonWSError("Auth timeout") from e

            for event in self._router.dispatch_frame(raw):
                if not isinstance(event, StatusEvent):
                    continue
                if event.is_auth_success:
                    return
                if event.is_auth_failure:
                    raise PolygonWSError(f"Auth error: {event.message or event.status}")

    async def _disconnect(self) -> None:
        self._connected_evt.clear()

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        if self._reader_task:
            self._reader_task.cancel()
            self._reader_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                self._logger.debug("ws_close_error", error=str(e))
            self._ws = None

    async def _reader_loop(self, ws: ClientConnection) -> None:
        try:
            while True:
                raw = await ws.recv()
                try:
                    self._router.dispatch_frame(raw)
                except (ValueError, TypeError) as e:
                    self._logger.warning("frame_parse_error", error=str(e))
        except ConnectionClosed as e:
            self._logger.info("ws_connection_closed", code=getattr(e.rcvd, "code", None))
            return

    async def _heartbeat_loop(self, ws: ClientConnection) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=5.0)
                self._logger.debug("ws_ping_ok")
            except Exception as e:
                self._logger.warning("ws_ping_failed", error=str(e))
                raise

    # ---- sending ----
    async def _send(self, payload: JsonDict) -> bool:
        """Send when connected; otherwise drop (pending sets are replayed on auth)."""
        ws = self._ws
        if ws is None or not self.is_connected:
            return False
        try:
            await ws.send(json.dumps(payload))
        except ConnectionClosed as e:
            self._logger.warning("ws_send_failed", action=payload.get("action"), error=str(e))
            return False
        return True

    def pending_params(self) -> List[str]:
        return [f"{ch}.{sym}" for ch in CHANNELS for sym in sorted(self._pending[ch])]

    async def _flush_subscriptions(self) -> None:
        params = self.pending_params()
        if params:
            await self._send({"action": "subscribe", "params": ",".join(params)})
            self._logger.info("subscribed", params=len(params))

    # ---- subscriptions ----
    async def subscribe(self, channel: str, symbols: Iterable[str]) -> None:
        if channel not in CHANNELS:
            raise PolygonWSError(f"Unknown channel: {channel}")
        added = [s for s in symbols if s not in self._pending[channel]]
        self._pending[channel].update(added)
        if added and self.is_connected:
            await self._send({"action": "subscribe", "params": ",".join(f"{channel}.{s}" for s in added)})

    async def unsubscribe(self, channel: str, symbols: Iterable[str]) -> None:
        if channel not in CHANNELS:
            raise PolygonWSError(f"Unknown channel: {channel}")
        symbols = list(symbols)
        for s in symbols:
            self._pending[channel].discard(s)
        if symbols and self.is_connected:
            await self._send({"action": "unsubscribe", "params": ",".join(f"{channel}.{s}" for s in symbols)})

    async def subscribe_trades(self, symbols: Iterable[str]) -> None:
        await self.subscribe(CHANNEL_TRADES, symbols)

    async def subscribe_agg_second(self, symbols: Iterable[str]) -> None:
        await self.subscribe(CHANNEL_AGG_SECOND, symbols)

    async def subscribe_agg_minute(self, symbols: Iterable[str]) -> None:
        await self.subscribe(CHANNEL_AGG_MINUTE, symbols)

    async def subscribe_for_timeframe(self, symbols: Iterable[str], timeframe: str) -> None:
        """Trades always; second aggregates for sub-minute timeframes, minute aggregates otherwise."""
        symbols = list(symbols)
        await self.subscribe_trades(symbols)
        if is_second_timeframe(timeframe):
            await self.subscribe_agg_second(symbols)
        else:
            await self.subscribe_agg_minute(symbols)

    async def unsubscribe_symbols(self, symbols: Iterable[str]) -> None:
        symbols = list(symbols)
        for ch in CHANNELS:
            present = [s for s in symbols if s in self._pending[ch]]
            if present:
                await self.unsubscribe(ch, present)

    async def clear_all(self) -> None:
        for ch in CHANNELS:
            current = sorted(self._pending[ch])
            if current:
                await self.unsubscribe(ch, current)
            self._pending[ch].clear()

    # ---- listeners ----
    def on_price(self, listener: PriceListener) -> Callable[[], None]:
        return _attach(self._price_listeners, listener)

    def on_trade(self, listener: Callable[[Tick], None]) -> Callable[[], None]:
        return _attach(self._trade_listeners, listener)

    def on_bar(self, listener: Callable[[Candle], None]) -> Callable[[], None]:
        return _attach(self._bar_listeners, listener)

    def on_status(self, listener: Callable[[StatusEvent], None]) -> Callable[[], None]:
        return self._router.add_listener(KIND_STATUS, listener)

    def _on_trade_event(self, event: TradeEvent) -> None:
        tick = Tick(symbol=event.symbol, price=event.price, ts_ms=event.ts_ms, size=event.size)
        self._notify(self._trade_listeners, tick)
        self._notify_price(event.symbol, event.price, event.ts_ms)

    def _on_aggregate_event(self, event: AggregateEvent) -> None:
        bar = event.candle
        self._notify(self._bar_listeners, bar)
        self._notify_price(bar.symbol, bar.close, bar.epoch_ms)

    def _notify(self, listeners: List[Callable[[Any], None]], item: Any) -> None:
        for listener in list(listeners):
            try:
                listener(item)
            except Exception as e:
                self._logger.warning("listener_error", error=str(e))

    def _notify_price(self, symbol: str, price: float, ts_ms: int) -> None:
        for listener in list(self._price_listeners):
            try:
                listener(symbol, price, ts_ms)
            except Exception as e:
                self._logger.warning("price_listener_error", symbol=symbol, error=str(e))


def _attach(listeners: List[Any], listener: Any) -> Callable[[], None]:
    listeners.append(listener)

    def detach() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return detach
