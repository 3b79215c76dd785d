# quotefeed/api/server.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from quotefeed.api.state import ApiState, build_state
from quotefeed.infrastructure.http.candle_api import CandleProviderError
from quotefeed.infrastructure.http.quote_api import QuoteAPIError
from quotefeed.infrastructure.llm.strategy_client import StrategyClientError
from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.infrastructure.utils.config import (
    REALTIME_PROVIDERS,
    QuoteFeedConfig,
    get_config,
    get_effective_provider,
    load_runtime_overrides,
    save_runtime_overrides,
)
from quotefeed.services.market.indicators import compute_overlay, default_indicator
from quotefeed.services.monitoring.metrics_store import read_metrics


class RefreshPayload(BaseModel):
    symbols: List[str]


class WatchlistPayload(BaseModel):
    symbols: List[str]


class ProviderPayload(BaseModel):
    provider: str
    developer_mode: Optional[bool] = None


def _split_symbols(raw: str) -> List[str]:
    return [s.strip().upper() for s in raw.split(",") if s.strip()]


def create_app(config: Optional[QuoteFeedConfig] = None, state: Optional[ApiState] = None) -> FastAPI:
    config = config or (state.config if state is not None else get_config())
    state = state or build_state(config)
    log = get_logger("api")

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        await state.aclose()

    app = FastAPI(title="quotefeed API", version="0.1.0", lifespan=lifespan)

    # CORS (frontend)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/metrics")
    def metrics():
        return read_metrics(state.metrics_path)

    @app.get("/events")
    def events(limit: int = Query(200, ge=1, le=5000)):
        return state.repo.list_events(limit=limit)

    @app.get("/quotes")
    def quotes(symbols: str = ""):
        wanted = _split_symbols(symbols)
        cached = state.quote_cache.get_cached_quotes(wanted)
        return {
            "quotes": {s: q.to_dict() for s, q in cached.items()},
            "fresh": [s for s in cached if state.quote_cache.is_fresh(s)],
        }

    @app.post("/quotes/refresh")
    async def refresh_quotes(payload: RefreshPayload):
        wanted = [s.strip().upper() for s in payload.symbols if s.strip()]
        try:
            fetched = await state.quotes.fetch_and_cache_bulk_quotes(wanted)
        except QuoteAPIError as e:
            log.warning("quote_refresh_failed", symbols=wanted, error=str(e))
            raise HTTPException(status_code=502, detail=str(e))
        return {"quotes": {s: q.to_dict() for s, q in fetched.items()}}

    @app.get("/candles/{symbol}")
    async def candles(symbol: str, timeframe: str = "5m", limit: int = Query(500, ge=1, le=5000)):
        try:
            bars = await state.candles.get_candles(symbol.upper(), timeframe, limit)
        except CandleProviderError as e:
            raise HTTPException(status_code=502, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"symbol": symbol.upper(), "timeframe": timeframe, "candles": [c.to_dict() for c in bars]}

    @app.get("/indicators/{symbol}")
    async def indicators(
        symbol: str,
        name: str,
        timeframe: str = "5m",
        params: str = "",
        limit: int = Query(500, ge=1, le=5000),
    ):
        try:
            calc_params = [float(p) for p in params.split(",") if p.strip()]
            ind = default_indicator(name, calc_params or None)
            bars = await state.candles.get_candles(symbol.upper(), timeframe, limit)
            series = compute_overlay(ind, bars)
        except CandleProviderError as e:
            raise HTTPException(status_code=502, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "symbol": symbol.upper(),
            "timeframe": timeframe,
            "indicator": ind.to_dict(),
            "times": [c.epoch_ms for c in bars],
            "series": series,
        }

    @app.get("/trade-plans/{symbol}")
    async def trade_plan(symbol: str, timeframe: str = "5m", force: bool = False):
        if not state.trade_plans.configured:
            raise HTTPException(status_code=503, detail="strategy endpoint not configured")
        try:
            plan = await state.trade_plans.get_plan(symbol.upper(), timeframe, force=force)
        except (StrategyClientError, CandleProviderError) as e:
            log.warning("trade_plan_failed", symbol=symbol, error=str(e))
            raise HTTPException(status_code=502, detail=str(e))
        return plan.to_dict()

    def watchlist_status():
        monitor = state.watchlist
        return {
            "symbols": monitor.watchlist,
            "realtime": monitor.is_realtime_active(),
            "prices": monitor.get_last_prices(),
        }

    def require_watchlist() -> None:
        if state.watchlist is None:
            raise HTTPException(status_code=503, detail="watchlist monitor not configured")

    @app.get("/watchlist")
    def get_watchlist():
        require_watchlist()
        return watchlist_status()

    @app.put("/watchlist")
    async def put_watchlist(payload: WatchlistPayload):
        require_watchlist()
        symbols = list(dict.fromkeys(s.strip().upper() for s in payload.symbols if s.strip()))
        # start resets last prices, so the preload runs after it
        await state.watchlist.start(symbols)
        await state.watchlist.preload(symbols)
        log.info("watchlist_started", symbols=len(symbols), realtime=state.watchlist.is_realtime_active())
        return watchlist_status()

    @app.delete("/watchlist")
    async def delete_watchlist():
        require_watchlist()
        await state.watchlist.stop()
        return watchlist_status()

    @app.get("/config/provider")
    def get_provider():
        overrides = load_runtime_overrides(state.runtime_config_path)
        return {
            "provider": get_effective_provider(config, state.runtime_config_path),
            "developer_mode": bool(overrides.get("developer_mode", config.realtime.developer_mode)),
        }

    @app.post("/config/provider")
    def set_provider(payload: ProviderPayload):
        provider = payload.provider.lower()
        if provider not in REALTIME_PROVIDERS:
            raise HTTPException(status_code=400, detail=f"provider must be one of: {list(REALTIME_PROVIDERS)}")
        save_runtime_overrides(
            {"realtime_provider": provider, "developer_mode": payload.developer_mode},
            state.runtime_config_path,
        )
        log.info("realtime_provider_override_saved", provider=provider, developer_mode=payload.developer_mode)
        return get_provider()

    return app
