"""Trade plan and chart indicator models.

Both are display/advice state: a trade plan is whatever the strategy endpoint
returned (no ordering check between stop, entry and targets) and an indicator
config is only meaningful as a member of the chart's indicator list.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class TradePlan:
    symbol: str
    entry: Optional[float] = None
    stop: Optional[float] = None
    targets: List[float] = field(default_factory=list)
    side: Optional[str] = None          # "long" | "short"
    confidence: Optional[float] = None  # 0..1
    rationale: List[str] = field(default_factory=list)
    strategy: Optional[str] = None
    timeframe: Optional[str] = None
    created_at: float = 0.0             # epoch seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "entry": self.entry,
            "stop": self.stop,
            "targets": list(self.targets),
            "side": self.side,
            "confidence": self.confidence,
            "rationale": list(self.rationale),
            "strategy": self.strategy,
            "timeframe": self.timeframe,
            "created_at": self.created_at,
        }


@dataclass
class IndicatorLineStyle:
    color: str
    size: float = 1
    style: str = "solid"


@dataclass
class IndicatorConfig:
    name: str
    calc_params: List[float] = field(default_factory=list)
    overlay: bool = False
    lines: List[IndicatorLineStyle] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "calc_params": list(self.calc_params),
            "overlay": self.overlay,
            "lines": [l.__dict__.copy() for l in self.lines],
        }
