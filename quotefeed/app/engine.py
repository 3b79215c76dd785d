"""Realtime stream loop: socket feed -> candle aggregation -> metrics file."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from quotefeed.infrastructure.logging.logging import configure_logging, get_logger
from quotefeed.infrastructure.polygon.polygon_ws_client import PolygonWSClient
from quotefeed.infrastructure.storage.sqlite_repository import SQLiteRepository
from quotefeed.infrastructure.utils.config import get_effective_provider, load_config, load_runtime_overrides
from quotefeed.infrastructure.utils.timeutils import utc_now
from quotefeed.models.market_models import Candle
from quotefeed.services.market.candle_builder import CandleAggregator
from quotefeed.services.market.quote_cache import QuoteCache
from quotefeed.services.monitoring.metrics import FeedMetrics
from quotefeed.services.monitoring.metrics_store import write_metrics
from quotefeed.services.realtime.realtime_router import RealtimeRouter
from quotefeed.services.realtime.simulator import SimulatorFeed


def _record_event(repo: SQLiteRepository, log, level: str, type_: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
    try:
        repo.log_event(ts=utc_now().isoformat(), level=level, type=type_, message=message, data=data or {})
    except Exception as e:
        log.warning("event_persist_failed", type=type_, error=str(e))


def connection_transition(metrics: FeedMetrics, connected: bool, connection_count: int) -> Optional[str]:
    """Update `metrics` for the latest connected flag; returns the event type of a transition, if any."""
    was_connected = metrics.connected
    metrics.connected = connected
    if was_connected and not connected:
        return "ws_disconnected"
    if not was_connected and connected:
        if connection_count > 1:
            metrics.reconnects += 1
        return "ws_reconnected" if metrics.reconnects else "ws_connected"
    return None


def closed_candle_listener(metrics: FeedMetrics, aggregator: CandleAggregator, log) -> Callable[[str, Candle], None]:
    def on_candle(symbol: str, candle: Candle) -> None:
        # vendor bars for untracked timeframes pass through listeners too
        if not candle.is_complete or not aggregator.is_tracked(symbol, candle.timeframe):
            return
        metrics.candles_closed += 1
        log.info(
            "candle_closed",
            symbol=symbol,
            timeframe=candle.timeframe,
            time=candle.epoch_ms,
            open=candle.open,
            high=candle.high,
            low=candle.low,
            close=candle.close,
            volume=candle.volume,
        )

    return on_candle


async def run_stream(config_path: Optional[Path] = None) -> None:
    config = load_config(config_path)
    configure_logging(config.log_level, role="stream")
    log = get_logger("engine")

    provider = get_effective_provider(config)
    developer_mode = bool(load_runtime_overrides().get("developer_mode", config.realtime.developer_mode))
    log.info(
        "config_loaded",
        provider=provider,
        developer_mode=developer_mode,
        symbols=config.realtime.symbols,
        timeframe=config.realtime.timeframe,
        key_len=len(config.polygon.api_key),
    )

    repo = SQLiteRepository(Path(config.database.path))
    metrics_path = Path(config.monitoring.metrics_path)
    metrics = FeedMetrics(provider=provider, symbols=list(config.realtime.symbols))
    quote_cache = QuoteCache(
        repo,
        memory_ttl_sec=config.quotes.memory_ttl_sec,
        storage_ttl_sec=config.quotes.storage_ttl_sec,
        persist_interval_sec=config.quotes.persist_interval_sec,
    )

    client = PolygonWSClient(
        config.polygon.api_key,
        config.polygon.websocket_url,
        heartbeat_interval_sec=config.realtime.heartbeat_interval_sec,
        auth_timeout_sec=config.realtime.auth_timeout_sec,
        initial_backoff_sec=config.realtime.initial_backoff_sec,
        max_reconnect_backoff_sec=config.realtime.max_backoff_sec,
    )
    simulator = SimulatorFeed(
        volatility=config.simulator.volatility,
        min_delay_ms=config.simulator.min_delay_ms,
        max_delay_ms=config.simulator.max_delay_ms,
    )
    aggregator = CandleAggregator()
    router = RealtimeRouter(
        client,
        simulator,
        aggregator,
        quote_cache,
        provider=provider,
        developer_mode=developer_mode,
    )

    router.on_price(metrics.record_price)
    router.on_candle(closed_candle_listener(metrics, aggregator, log))

    _record_event(repo, log, "INFO", "engine_started", "Stream engine started", {"provider": provider})

    try:
        await router.start()
        await router.subscribe_for_timeframe(config.realtime.symbols, config.realtime.timeframe)
        log.info("stream_subscribed", symbols=config.realtime.symbols, timeframe=config.realtime.timeframe)

        while True:
            transition = connection_transition(
                metrics, router.uses_simulator or client.is_connected, client.connection_count
            )
            if transition == "ws_disconnected":
                log.warning(transition, message="Polygon connection lost, client is reconnecting")
                _record_event(repo, log, "WARNING", transition, "Polygon connection lost")
            elif transition is not None:
                log.info(transition, connections=client.connection_count)
                _record_event(repo, log, "INFO", transition, "Connected to realtime feed", {"reconnects": metrics.reconnects})

            quote_cache.flush()
            write_metrics(metrics.to_dict(), metrics_path)
            try:
                await asyncio.sleep(config.monitoring.update_interval_seconds)
            except asyncio.CancelledError:
                break
    finally:
        await router.stop()
        quote_cache.flush()
        _record_event(repo, log, "INFO", "engine_stopped", "Stream engine stopped")
        repo.close()
        log.info("engine_stopped")
