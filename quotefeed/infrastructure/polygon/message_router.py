"""Classify Polygon WebSocket frames and fan them out to listeners.

A text frame carries either one JSON object or an array of them. Each object
has an event-type tag (`ev`, or `event` on older payloads):

- "status"  connection/auth status
- "T"       trade           {sym, p, s, t}
- "A"       second aggregate {sym, o, h, l, c, v, s, e}
- "AM"      minute aggregate {sym, o, h, l, c, v, s, e}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.infrastructure.utils.timeutils import ms_to_datetime, now_ms
from quotefeed.models.market_models import Candle

JsonDict = Dict[str, Any]

AGGREGATE_TIMEFRAMES: Dict[str, str] = {"A": "1s", "AM": "1m"}

KIND_STATUS = "status"
KIND_TRADE = "trade"
KIND_AGGREGATE = "aggregate"


@dataclass(frozen=True)
class StatusEvent:
    status: str
    message: str = ""

    @property
    def is_auth_success(self) -> bool:
        return self.status == "auth_success" or self.message == "authenticated"

    @property
    def is_auth_failure(self) -> bool:
        return self.status == "auth_failed"


@dataclass(frozen=True)
class TradeEvent:
    symbol: str
    price: float
    size: float
    ts_ms: int


@dataclass(frozen=True)
class AggregateEvent:
    candle: Candle


Event = Union[StatusEvent, TradeEvent, AggregateEvent]


def parse_frames(raw: Union[str, bytes]) -> List[JsonDict]:
    """Decode one frame into a list of message dicts; raises ValueError on bad JSON."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Malformed frame: {e}") from e
    msgs = data if isinstance(data, list) else [data]
    return [m for m in msgs if isinstance(m, dict)]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _num(msg: JsonDict, key: str, default: float) -> float:
    value = msg.get(key)
    return float(value) if _is_number(value) else default


def _ms(msg: JsonDict, *keys: str) -> int:
    for key in keys:
        value = msg.get(key)
        if _is_number(value) and value > 0:
            return int(value)
    return now_ms()


def classify(msg: JsonDict) -> Optional[Event]:
    ev = msg.get("ev") or msg.get("event")

    if ev == "status":
        return StatusEvent(status=str(msg.get("status", "")), message=str(msg.get("message", "")))

    symbol = msg.get("sym")
    if not symbol:
        return None

    if ev == "T":
        if not _is_number(msg.get("p")):
            return None
        return TradeEvent(
            symbol=str(symbol),
            price=float(msg["p"]),
            size=_num(msg, "s", 0.0),
            ts_ms=_ms(msg, "t"),
        )

    timeframe = AGGREGATE_TIMEFRAMES.get(ev or "")
    if timeframe is not None:
        if not _is_number(msg.get("c")):
            return None
        close = float(msg["c"])
        start = _ms(msg, "s", "t")
        return AggregateEvent(
            candle=Candle(
                symbol=str(symbol),
                timeframe=timeframe,
                open_time=ms_to_datetime(start),
                open=_num(msg, "o", close),
                high=_num(msg, "h", close),
                low=_num(msg, "l", close),
                close=close,
                volume=_num(msg, "v", 0.0),
                is_complete=True,
            )
        )

    return None


def event_kind(event: Event) -> str:
    if isinstance(event, StatusEvent):
        return KIND_STATUS
    if isinstance(event, TradeEvent):
        return KIND_TRADE
    return KIND_AGGREGATE


class MessageRouter:
    """Dispatch classified events to per-kind listeners."""

    def __init__(self) -> None:
        self._logger = get_logger("message_router")
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {
            KIND_STATUS: [],
            KIND_TRADE: [],
            KIND_AGGREGATE: [],
        }

    def add_listener(self, kind: str, listener: Callable[[Any], None]) -> Callable[[], None]:
        if kind not in self._listeners:
            raise ValueError(f"Unknown event kind: {kind}")
        self._listeners[kind].append(listener)

        def detach() -> None:
            if listener in self._listeners[kind]:
                self._listeners[kind].remove(listener)

        return detach

    def dispatch(self, msg: JsonDict) -> Optional[Event]:
        event = classify(msg)
        if event is None:
            return None
        kind = event_kind(event)
        for listener in list(self._listeners[kind]):
            try:
                listener(event)
            except Exception as e:
                self._logger.warning("listener_error", kind=kind, error=str(e))
        return event

    def dispatch_frame(self, raw: Union[str, bytes]) -> List[Event]:
        events: List[Event] = []
        for msg in parse_frames(raw):
            try:
                event = self.dispatch(msg)
            except (ValueError, TypeError) as e:
                self._logger.warning("message_skipped", ev=msg.get("ev"), error=str(e))
                continue
            if event is not None:
                events.append(event)
        return events
