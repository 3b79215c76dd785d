"""Market domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from quotefeed.infrastructure.utils.timeutils import datetime_to_ms, ms_to_datetime


@dataclass(frozen=True)
class Tick:
    symbol: str
    price: float
    ts_ms: int
    size: float = 0.0


@dataclass
class Quote:
    symbol: str
    last: float
    change: float = 0.0
    change_percent: float = 0.0   # percent, -0.27 means -0.27%
    volume: Optional[float] = None
    updated: Optional[int] = None  # epoch seconds

    @classmethod
    def placeholder(cls, symbol: str, updated: Optional[int] = None) -> "Quote":
        return cls(symbol=symbol, last=0.0, change=0.0, change_percent=0.0, volume=0.0, updated=updated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "last": self.last,
            "change": self.change,
            "change_percent": self.change_percent,
            "volume": self.volume,
            "updated": self.updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Quote":
        return cls(
            symbol=str(data["symbol"]),
            last=float(data.get("last") or 0.0),
            change=float(data.get("change") or 0.0),
            change_percent=float(data.get("change_percent") or 0.0),
            volume=data.get("volume"),
            updated=data.get("updated"),
        )


@dataclass
class Candle:
    symbol: str
    timeframe: str
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    is_complete: bool = False

    @property
    def epoch_ms(self) -> int:
        return datetime_to_ms(self.open_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "time": self.epoch_ms,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "is_complete": self.is_complete,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candle":
        return cls(
            symbol=str(data["symbol"]),
            timeframe=str(data["timeframe"]),
            open_time=ms_to_datetime(int(data["time"])),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume") or 0.0),
            is_complete=bool(data.get("is_complete", True)),
        )


@dataclass
class Indicators:
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    atr: Optional[float] = None
    rsi: Optional[float] = None
