"""Quote HTTP providers (httpx async).

- MarketDataQuoteAPI: primary, api.marketdata.app (bulk + single quotes)
- PolygonSnapshotQuoteAPI: secondary, Polygon ticker snapshot (single quotes)
"""

from __future__ import annotations

import math
import re
import time
from typing import Any, Dict, Iterable, List, Optional

import httpx

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.models.market_models import Quote

JsonDict = Dict[str, Any]

_RATE_LIMIT_RE = re.compile(r"rate ?limit", re.IGNORECASE)


class QuoteAPIError(RuntimeError):
    pass


class RateLimitError(QuoteAPIError):
    pass


def _read_number(value: Any) -> Optional[float]:
    """First element of an array value, or the value itself; None when not finite."""
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def _first(*values: Optional[float]) -> Optional[float]:
    for v in values:
        if v is not None:
            return v
    return None


def _column(data: JsonDict, key: str, i: int) -> Optional[float]:
    col = data.get(key) or []
    if not isinstance(col, list) or i >= len(col):
        return None
    return _read_number(col[i])


class _HTTPQuoteAPI:
    """Shared client handling: owns an httpx.AsyncClient unless one is injected."""

    name = "http"

    def __init__(self, base_url: str, *, timeout_sec: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec, connect=5.0))
        self._logger = get_logger("quote_api", provider=self.name)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> JsonDict:
        url = f"{self._base_url}{path}"
        try:
            resp = await self._client.get(url, params=params, headers=self._headers())
        except httpx.HTTPError as e:
            raise QuoteAPIError(f"{self.name} request failed: {e}") from e

        if resp.status_code == 429:
            raise RateLimitError(f"{self.name} HTTP 429: rate limited")
        if resp.status_code >= 400:
            raise QuoteAPIError(f"{self.name} HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise QuoteAPIError(f"{self.name} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise QuoteAPIError(f"{self.name} returned unexpected payload")
        return data

    def _raise_api_error(self, data: JsonDict) -> None:
        msg = str(data.get("errmsg") or data.get("error") or data.get("message") or "unknown")
        if _RATE_LIMIT_RE.search(msg):
            raise RateLimitError(f"{self.name} API error: {msg}")
        raise QuoteAPIError(f"{self.name} API error: {msg}")


class MarketDataQuoteAPI(_HTTPQuoteAPI):
    name = "marketdata"

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.marketdata.app",
        *,
        timeout_sec: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(base_url, timeout_sec=timeout_sec, client=client)
        self._token = api_token

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def fetch_bulk_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        symbols = list(symbols)
        if not symbols:
            return {}

        data = await self._get_json("/v1/stocks/bulkquotes/", params={"symbols": ",".join(symbols)})
        if data.get("s") != "ok":
            self._raise_api_error(data)

        syms: List[str] = data.get("symbol") or []
        out: Dict[str, Quote] = {}
        for i, sym in enumerate(syms):
            changepct = _column(data, "changepct", i)
            updated = _column(data, "updated", i)
            out[sym] = Quote(
                symbol=sym,
                last=_column(data, "last", i) or 0.0,
                change=_column(data, "change", i) or 0.0,
                change_percent=(changepct or 0.0) * 100,  # API returns a fraction
                volume=_column(data, "volume", i) or 0.0,
                updated=int(updated) if updated else None,
            )
        self._logger.debug("bulk_quotes_fetched", requested=len(symbols), received=len(out))
        return out

    async def fetch_single_quote(self, symbol: str) -> Quote:
        data = await self._get_json(f"/v1/stocks/quotes/{symbol}/")
        if data.get("s") and data.get("s") != "ok":
            self._raise_api_error(data)

        last = _first(_read_number(data.get("last")), _read_number(data.get("mid")), _read_number(data.get("price")))
        prev_close = _first(
            _read_number(data.get("prevClose")),
            _read_number(data.get("previousClose")),
            _read_number(data.get("pc")),
        )

        change = _read_number(data.get("change"))
        if change is None and last is not None and prev_close is not None:
            change = last - prev_close

        change_percent: Optional[float]
        changepct = _read_number(data.get("changepct"))
        if changepct is not None:
            change_percent = changepct * 100
        else:
            change_percent = _first(_read_number(data.get("changePercent")), _read_number(data.get("cp")))
        if change_percent is None and change is not None and prev_close:
            change_percent = change / prev_close * 100

        updated = _first(_read_number(data.get("updated")), _read_number(data.get("timestamp")))

        return Quote(
            symbol=symbol,
            last=last or 0.0,
            change=change or 0.0,
            change_percent=change_percent or 0.0,
            volume=_first(_read_number(data.get("volume")), _read_number(data.get("v"))) or 0.0,
            updated=int(updated) if updated else int(time.time()),
        )


class PolygonSnapshotQuoteAPI(_HTTPQuoteAPI):
    name = "polygon_snapshot"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.polygon.io",
        *,
        timeout_sec: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(base_url, timeout_sec=timeout_sec, client=client)
        self._api_key = api_key

    async def fetch_single_quote(self, symbol: str) -> Quote:
        if not self._api_key:
            raise QuoteAPIError("Polygon API key missing")

        data = await self._get_json(
            f"/v2/snapshot/locale/us/markets/stocks/tickers/{symbol}",
            params={"apiKey": self._api_key},
        )
        if data.get("status") not in (None, "OK", "DELAYED"):
            self._raise_api_error(data)

        ticker = data.get("ticker") or {}
        day = ticker.get("day") or {}
        prev = ticker.get("prevDay") or {}
        last_trade = ticker.get("lastTrade") or {}

        last = _first(_read_number(last_trade.get("p")), _read_number(day.get("c")), _read_number(prev.get("c")))
        prev_close = _read_number(prev.get("c"))

        change = _read_number(ticker.get("todaysChange"))
        if change is None and last is not None and prev_close is not None:
            change = last - prev_close
        change_percent = _read_number(ticker.get("todaysChangePerc"))
        if change_percent is None and change is not None and prev_close:
            change_percent = change / prev_close * 100

        updated_ns = _read_number(ticker.get("updated"))
        return Quote(
            symbol=symbol,
            last=last or 0.0,
            change=change or 0.0,
            change_percent=change_percent or 0.0,
            volume=_read_number(day.get("v")) or 0.0,
            updated=int(updated_ns // 1_000_000_000) if updated_ns else int(time.time()),
        )
