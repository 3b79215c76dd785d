"""In-memory feed metrics snapshot for the API + console."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class FeedMetrics:
    connected: bool = False
    provider: str = ""
    symbols: List[str] = field(default_factory=list)
    ticks_received: int = 0
    candles_closed: int = 0
    reconnects: int = 0
    last_prices: Dict[str, float] = field(default_factory=dict)
    last_tick_ms: Optional[int] = None

    def record_price(self, symbol: str, price: float, ts_ms: int) -> None:
        self.ticks_received += 1
        self.last_prices[symbol] = price
        self.last_tick_ms = ts_ms

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
