"""Historical candle providers (httpx async).

- PolygonCandleAPI: /v2/aggs range endpoint, needs an API key
- YahooCandleAPI: keyless v8 chart endpoint, the fallback of last resort
- CandleFetcher: configured provider first, Yahoo when it has no key or fails
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Tuple

import httpx

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.infrastructure.utils.timeutils import ms_to_datetime, now_ms
from quotefeed.models.market_models import Candle
from quotefeed.services.market.candle_builder import rollup_candles
from quotefeed.services.market.timeframes import (
    DAY_MS,
    HOUR_MS,
    MINUTE_MS,
    MONTH_MS,
    SECOND_MS,
    WEEK_MS,
    normalize_timeframe,
    parse_timeframe_ms,
)

JsonDict = Dict[str, Any]

MIN_BARS = 1
MAX_BARS = 1200

# Market hours cover roughly a third of wall-clock time; fetch windows are widened accordingly.
LOOKBACK_FACTOR = 3

_POLYGON_SPANS: List[Tuple[int, str]] = [
    (MONTH_MS, "month"),
    (WEEK_MS, "week"),
    (DAY_MS, "day"),
    (HOUR_MS, "hour"),
    (MINUTE_MS, "minute"),
    (SECOND_MS, "second"),
]

# Yahoo interval -> (bar ms, max lookback ms)
_YAHOO_INTERVALS: List[Tuple[str, int, int]] = [
    ("1m", MINUTE_MS, 7 * DAY_MS),
    ("2m", 2 * MINUTE_MS, 60 * DAY_MS),
    ("5m", 5 * MINUTE_MS, 60 * DAY_MS),
    ("15m", 15 * MINUTE_MS, 60 * DAY_MS),
    ("30m", 30 * MINUTE_MS, 60 * DAY_MS),
    ("60m", HOUR_MS, 730 * DAY_MS),
    ("1d", DAY_MS, 20 * 365 * DAY_MS),
    ("1wk", WEEK_MS, 20 * 365 * DAY_MS),
    ("1mo", MONTH_MS, 20 * 365 * DAY_MS),
]


class CandleProviderError(RuntimeError):
    pass


def clamp_bars(out_bars: int) -> int:
    return max(MIN_BARS, min(MAX_BARS, int(out_bars)))


def polygon_range(timeframe: str) -> Tuple[int, str]:
    """(multiplier, timespan) for the Polygon aggregates endpoint."""
    tf_ms = parse_timeframe_ms(timeframe)
    for unit_ms, span in _POLYGON_SPANS:
        if tf_ms >= unit_ms and tf_ms % unit_ms == 0:
            return tf_ms // unit_ms, span
    return 1, "minute"


def yahoo_interval(timeframe: str) -> Tuple[str, int, int]:
    """Largest Yahoo interval that evenly divides the timeframe."""
    tf_ms = parse_timeframe_ms(timeframe)
    best = _YAHOO_INTERVALS[0]
    for entry in _YAHOO_INTERVALS:
        if entry[1] <= tf_ms and tf_ms % entry[1] == 0:
            best = entry
    return best


def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def _mark_complete(candles: List[Candle], tf_ms: int, now: int) -> List[Candle]:
    for c in candles:
        c.is_complete = c.epoch_ms + tf_ms <= now
    return candles


class _HTTPCandleAPI:
    name = "http"

    def __init__(self, *, timeout_sec: float = 15.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec, connect=5.0))
        self._logger = get_logger("candle_api", provider=self.name)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, url: str, params: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> JsonDict:
        try:
            resp = await self._client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise CandleProviderError(f"{self.name} request failed: {e}") from e
        if resp.status_code >= 400:
            raise CandleProviderError(f"{self.name} HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise CandleProviderError(f"{self.name} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise CandleProviderError(f"{self.name} returned unexpected payload")
        return data


class PolygonCandleAPI(_HTTPCandleAPI):
    name = "polygon"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.polygon.io",
        *,
        timeout_sec: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, client=client)
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")

    @property
    def has_key(self) -> bool:
        return bool(self._api_key)

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        if not self._api_key:
            raise CandleProviderError("Polygon API key missing")

        tf_ms = parse_timeframe_ms(timeframe)
        mult, span = polygon_range(timeframe)
        to_ms = now_ms()
        from_ms = to_ms - max(limit * tf_ms * LOOKBACK_FACTOR, 5 * DAY_MS)

        url = f"{self._base_url}/v2/aggs/ticker/{symbol}/range/{mult}/{span}/{from_ms}/{to_ms}"
        data = await self._get_json(
            url,
            params={"adjusted": "true", "sort": "asc", "limit": 50000, "apiKey": self._api_key},
        )
        if data.get("status") == "ERROR":
            raise CandleProviderError(f"polygon API error: {data.get('error') or data.get('message') or 'unknown'}")

        candles: List[Candle] = []
        for r in data.get("results") or []:
            o, h, l, c = (_finite(r.get(k)) for k in ("o", "h", "l", "c"))
            t = r.get("t")
            if o is None or c is None or t is None:
                continue
            candles.append(
                Candle(
                    symbol=symbol,
                    timeframe=timeframe,
                    open_time=ms_to_datetime(int(t)),
                    open=o,
                    high=h if h is not None else max(o, c),
                    low=l if l is not None else min(o, c),
                    close=c,
                    volume=_finite(r.get("v")) or 0.0,
                )
            )
        self._logger.debug("candles_fetched", symbol=symbol, timeframe=timeframe, count=len(candles))
        return _mark_complete(candles[-limit:], tf_ms, to_ms)


class YahooCandleAPI(_HTTPCandleAPI):
    name = "yahoo"

    def __init__(
        self,
        base_url: str = "https://query1.finance.yahoo.com",
        *,
        timeout_sec: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, client=client)
        self._base_url = base_url.rstrip("/")

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        tf_ms = parse_timeframe_ms(timeframe)
        interval, interval_ms, max_lookback = yahoo_interval(timeframe)
        to_ms = now_ms()
        from_ms = to_ms - min(max(limit * tf_ms * LOOKBACK_FACTOR, 5 * DAY_MS), max_lookback)

        data = await self._get_json(
            f"{self._base_url}/v8/finance/chart/{symbol}",
            params={"interval": interval, "period1": from_ms // 1000, "period2": to_ms // 1000},
            headers={"User-Agent": "Mozilla/5.0"},
        )
        chart = data.get("chart") or {}
        if chart.get("error"):
            err = chart["error"]
            raise CandleProviderError(f"yahoo API error: {err.get('description') if isinstance(err, dict) else err}")

        results = chart.get("result") or []
        if not results:
            return []
        result = results[0] or {}
        timestamps = result.get("timestamp") or []
        quote = ((result.get("indicators") or {}).get("quote") or [{}])[0] or {}

        def col(key: str) -> List[Any]:
            return quote.get(key) or []

        opens, highs, lows, closes, volumes = col("open"), col("high"), col("low"), col("close"), col("volume")
        candles: List[Candle] = []
        for i, ts in enumerate(timestamps):
            o = _finite(opens[i]) if i < len(opens) else None
            c = _finite(closes[i]) if i < len(closes) else None
            if o is None or c is None:
                continue
            h = _finite(highs[i]) if i < len(highs) else None
            l = _finite(lows[i]) if i < len(lows) else None
            v = _finite(volumes[i]) if i < len(volumes) else None
            candles.append(
                Candle(
                    symbol=symbol,
                    timeframe=interval_tag(interval),
                    open_time=ms_to_datetime(int(ts) * 1000),
                    open=o,
                    high=h if h is not None else max(o, c),
                    low=l if l is not None else min(o, c),
                    close=c,
                    volume=v or 0.0,
                )
            )
        _mark_complete(candles, interval_ms, to_ms)

        if interval_ms != tf_ms:
            candles = rollup_candles(candles, timeframe)
        else:
            for c in candles:
                c.timeframe = timeframe
        self._logger.debug("candles_fetched", symbol=symbol, timeframe=timeframe, interval=interval, count=len(candles))
        return candles[-limit:]


def interval_tag(interval: str) -> str:
    return {"60m": "1h", "1d": "1D", "1wk": "1W", "1mo": "1M"}.get(interval, interval)


class CandleFetcher:
    """Configured provider first; Yahoo when the provider has no key or fails."""

    def __init__(
        self,
        polygon: PolygonCandleAPI,
        yahoo: YahooCandleAPI,
        *,
        provider: str = "polygon",
    ) -> None:
        self._log = get_logger("candle_fetcher")
        self._polygon = polygon
        self._yahoo = yahoo
        self._provider = provider

    async def fetch_candles_for_timeframe(self, symbol: str, timeframe: str, out_bars: int = 500) -> List[Candle]:
        limit = clamp_bars(out_bars)
        tf = normalize_timeframe(timeframe)

        if self._provider == "polygon" and self._polygon.has_key:
            try:
                return (await self._polygon.fetch_candles(symbol, tf, limit))[-limit:]
            except Exception as e:
                self._log.warning("candle_provider_fallback", symbol=symbol, timeframe=tf, provider="polygon", error=str(e))

        return (await self._yahoo.fetch_candles(symbol, tf, limit))[-limit:]

    async def aclose(self) -> None:
        await self._polygon.aclose()
        await self._yahoo.aclose()
