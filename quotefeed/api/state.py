# quotefeed/api/state.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from quotefeed.infrastructure.http.candle_api import CandleFetcher, PolygonCandleAPI, YahooCandleAPI
from quotefeed.infrastructure.http.quote_api import MarketDataQuoteAPI, PolygonSnapshotQuoteAPI
from quotefeed.infrastructure.llm.strategy_client import StrategyClient
from quotefeed.infrastructure.polygon.polygon_ws_client import PolygonWSClient
from quotefeed.infrastructure.storage.sqlite_repository import SQLiteRepository
from quotefeed.infrastructure.utils.config import QuoteFeedConfig
from quotefeed.services.market.candle_manager import CandleManager
from quotefeed.services.market.quote_cache import QuoteCache
from quotefeed.services.market.quote_fetcher import QuoteFetcher
from quotefeed.services.monitoring.metrics_store import METRICS_PATH
from quotefeed.services.planning.trade_plan_cache import TradePlanCache, TradePlanService
from quotefeed.services.realtime.watchlist_monitor import WatchlistMonitor


@dataclass
class ApiState:
    config: QuoteFeedConfig
    repo: SQLiteRepository
    quote_cache: QuoteCache
    quotes: QuoteFetcher
    candles: CandleManager
    trade_plans: TradePlanService
    metrics_path: Path = METRICS_PATH
    runtime_config_path: Optional[Path] = None
    watchlist: Optional[WatchlistMonitor] = None

    async def aclose(self) -> None:
        if self.watchlist is not None:
            await self.watchlist.aclose()
        await self.quotes.aclose()
        await self.candles.aclose()
        await self.trade_plans.aclose()
        self.repo.close()


def build_state(config: QuoteFeedConfig) -> ApiState:
    repo = SQLiteRepository(Path(config.database.path))

    quote_cache = QuoteCache(
        repo,
        memory_ttl_sec=config.quotes.memory_ttl_sec,
        storage_ttl_sec=config.quotes.storage_ttl_sec,
        persist_interval_sec=config.quotes.persist_interval_sec,
    )
    quotes = QuoteFetcher(
        MarketDataQuoteAPI(
            config.market_data.api_token,
            config.market_data.base_url,
            timeout_sec=config.market_data.timeout_sec,
        ),
        PolygonSnapshotQuoteAPI(config.polygon.api_key, config.polygon.rest_url),
        cache=quote_cache,
        concurrency=config.quotes.fallback_concurrency,
    )

    candle_fetcher = CandleFetcher(
        PolygonCandleAPI(config.polygon.api_key, config.polygon.rest_url),
        YahooCandleAPI(),
        provider=config.candles.provider,
    )
    candles = CandleManager(
        candle_fetcher,
        repo,
        cache_ttl_sec=config.candles.cache_ttl_sec,
        storage_ttl_sec=config.candles.storage_ttl_sec,
        base_timeframe=config.candles.base_timeframe,
        preload_limit=config.candles.preload_limit,
        max_cached=config.candles.max_cached,
    )

    strategy = StrategyClient(
        config.trade_plans.endpoint_url,
        config.trade_plans.api_key,
        timeout_sec=config.trade_plans.timeout_sec,
    )
    trade_plans = TradePlanService(
        strategy,
        candles,
        TradePlanCache(freshness_sec=config.trade_plans.freshness_sec),
    )

    watchlist = WatchlistMonitor(
        quotes,
        PolygonWSClient(
            config.polygon.api_key,
            config.polygon.websocket_url,
            heartbeat_interval_sec=config.realtime.heartbeat_interval_sec,
            auth_timeout_sec=config.realtime.auth_timeout_sec,
            initial_backoff_sec=config.realtime.initial_backoff_sec,
            max_reconnect_backoff_sec=config.realtime.max_backoff_sec,
        ),
        chunk_size=config.quotes.bulk_chunk_size,
        chunk_delay_sec=config.quotes.chunk_delay_sec,
    )

    return ApiState(
        config=config,
        repo=repo,
        quote_cache=quote_cache,
        quotes=quotes,
        candles=candles,
        trade_plans=trade_plans,
        metrics_path=Path(config.monitoring.metrics_path),
        watchlist=watchlist,
    )
