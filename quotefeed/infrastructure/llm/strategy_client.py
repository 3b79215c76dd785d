"""Client for the external LLM strategy endpoint.

The endpoint receives recent candles (plus indicator/context dicts) and
answers with a trade plan. The plan is taken as returned; no price ordering
is checked.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Sequence

import httpx

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.models.market_models import Candle
from quotefeed.models.plan_models import TradePlan

JsonDict = Dict[str, Any]


class StrategyClientError(RuntimeError):
    pass


def _num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def parse_trade_plan(symbol: str, timeframe: Optional[str], data: JsonDict, created_at: Optional[float] = None) -> TradePlan:
    """Map the endpoint payload (camelCase or snake_case) to a TradePlan."""
    if isinstance(data.get("plan"), dict):
        data = data["plan"]

    targets = [t for t in (_num(v) for v in (data.get("targets") or [])) if t is not None]
    side = data.get("side")
    return TradePlan(
        symbol=str(data.get("symbol") or symbol),
        entry=_num(data.get("entry")),
        stop=_num(data.get("stop")),
        targets=targets,
        side=str(side).lower() if side else None,
        confidence=_num(data.get("confidence")),
        rationale=_str_list(data.get("why") if data.get("why") is not None else data.get("rationale")),
        strategy=data.get("strategyChosen") or data.get("strategy"),
        timeframe=data.get("timeframe") or timeframe,
        created_at=time.time() if created_at is None else created_at,
    )


class StrategyClient:
    def __init__(
        self,
        endpoint_url: str,
        api_key: str = "",
        *,
        timeout_sec: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._log = get_logger("strategy_client")
        self._url = endpoint_url
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)

    @property
    def configured(self) -> bool:
        return bool(self._url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def request_plan(
        self,
        symbol: str,
        timeframe: str,
        candles: Sequence[Candle],
        context: Optional[JsonDict] = None,
        indicators: Optional[JsonDict] = None,
    ) -> TradePlan:
        if not self._url:
            raise StrategyClientError("Strategy endpoint not configured (trade_plans.endpoint_url)")

        payload = {
            "symbol": symbol,
            "timeframe": timeframe,
            "candleData": {timeframe: [c.to_dict() for c in candles]},
            "indicators": indicators or {},
            "context": context or {},
        }
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            resp = await self._client.post(self._url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StrategyClientError(f"Strategy endpoint HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise StrategyClientError(f"Strategy endpoint request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise StrategyClientError("Strategy endpoint returned invalid JSON") from e
        if not isinstance(data, dict):
            raise StrategyClientError("Strategy endpoint returned unexpected payload")

        plan = parse_trade_plan(symbol, timeframe, data)
        self._log.info("trade_plan_received", symbol=symbol, timeframe=timeframe, side=plan.side, strategy=plan.strategy)
        return plan
