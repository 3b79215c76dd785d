"""Chart indicator configs and their value series.

Indicator configs are display state kept as a list unique by name; every
list helper returns a new list. `compute_overlay` turns a config plus candles
into one value series per line, and `IndicatorEngine` keeps incremental
EMA/ATR/RSI for plan requests.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from quotefeed.models.market_models import Candle, Indicators
from quotefeed.models.plan_models import IndicatorConfig, IndicatorLineStyle
from quotefeed.services.market.timeframes import DAY_MS, bucket_start_ms

Series = List[Optional[float]]

PALETTE = (
    "#10B981",
    "#3B82F6",
    "#F59E0B",
    "#EF4444",
    "#A78BFA",
    "#22D3EE",
    "#F472B6",
    "#FDE047",
)
PADDING_COLOR = "#00D4AA"


@dataclass(frozen=True)
class IndicatorMeta:
    name: str
    default_params: Tuple[float, ...] = ()
    overlay: bool = False
    default_color: Optional[str] = None


BUILTIN_INDICATORS: Tuple[IndicatorMeta, ...] = (
    IndicatorMeta("MA", (5, 10, 30, 60), True, "#3B82F6"),
    IndicatorMeta("EMA", (6, 12, 20), True, "#22D3EE"),
    IndicatorMeta("SMA", (12, 2), True, "#EAB308"),
    IndicatorMeta("BBI", (3, 6, 12, 24), True, "#A78BFA"),
    IndicatorMeta("BOLL", (20, 2), True, "#F59E0B"),
    IndicatorMeta("VWAP", (), True, "#FDE68A"),
    IndicatorMeta("VOL", (5, 10, 20), False, "#6EE7B7"),
    IndicatorMeta("MACD", (12, 26, 9), False, "#60A5FA"),
    IndicatorMeta("KDJ", (9, 3, 3), False, "#34D399"),
    IndicatorMeta("RSI", (6, 12, 24), False, "#F472B6"),
    IndicatorMeta("ATR", (14,), False, "#FB923C"),
    IndicatorMeta("SAR", (2, 2, 20), True, "#FB7185"),
    IndicatorMeta("OBV", (30,), False, "#93C5FD"),
    IndicatorMeta("DMA", (10, 50, 10), False, "#67E8F9"),
    IndicatorMeta("TRIX", (12, 20), False, "#FDE047"),
    IndicatorMeta("WR", (6, 10, 14), False, "#F9A8D4"),
    IndicatorMeta("MTM", (6, 10), False, "#C4B5FD"),
    IndicatorMeta("ROC", (12, 6), False, "#FCA5A5"),
)

_META: Dict[str, IndicatorMeta] = {m.name: m for m in BUILTIN_INDICATORS}

PROFILE_PARAMS: Dict[str, List[Tuple[str, Tuple[float, ...]]]] = {
    "day_trade": [
        ("EMA", (9, 21, 50)),
        ("VWAP", ()),
        ("VOL", ()),
        ("RSI", (14,)),
        ("MACD", (12, 26, 9)),
        ("BOLL", (20, 2)),
    ],
    "swing_trade": [
        ("EMA", (20, 50, 200)),
        ("SMA", (50, 200)),
        ("VOL", ()),
        ("RSI", (14,)),
        ("MACD", (12, 26, 9)),
        ("BOLL", (20, 2)),
    ],
}


def get_indicator_meta(name: str) -> Optional[IndicatorMeta]:
    return _META.get(name) or next((m for m in BUILTIN_INDICATORS if m.name.lower() == name.lower()), None)


def build_default_lines(count: int, base_color: Optional[str] = None) -> List[IndicatorLineStyle]:
    """One solid line per param (at least one); the first takes `base_color`."""
    lines = []
    for i in range(max(1, count)):
        color = base_color if (i == 0 and base_color) else PALETTE[i % len(PALETTE)]
        lines.append(IndicatorLineStyle(color=color))
    return lines


def default_indicator(name: str, params: Optional[Sequence[float]] = None) -> IndicatorConfig:
    meta = get_indicator_meta(name)
    calc_params = list(params) if params else list(meta.default_params if meta else ())
    return IndicatorConfig(
        name=meta.name if meta else name,
        calc_params=calc_params,
        overlay=bool(meta and meta.overlay),
        lines=build_default_lines(len(calc_params), meta.default_color if meta else None),
    )


def default_indicator_stack(profile: str) -> List[IndicatorConfig]:
    if profile not in PROFILE_PARAMS:
        raise ValueError(f"Unknown indicator profile: {profile}")
    return [default_indicator(name, params) for name, params in PROFILE_PARAMS[profile]]


# ---- list operations (keyed on name) ----
def is_selected(indicators: Iterable[IndicatorConfig], name: str) -> bool:
    return any(i.name == name for i in indicators)


def toggle_indicator(indicators: List[IndicatorConfig], name: str) -> List[IndicatorConfig]:
    if is_selected(indicators, name):
        return [i for i in indicators if i.name != name]
    return indicators + [default_indicator(name)]


def update_indicator(indicators: List[IndicatorConfig], name: str, **updates) -> List[IndicatorConfig]:
    return [replace(i, **updates) if i.name == name else i for i in indicators]


def update_indicator_line(
    indicators: List[IndicatorConfig], name: str, line_index: int, **updates
) -> List[IndicatorConfig]:
    out = []
    for ind in indicators:
        if ind.name != name:
            out.append(ind)
            continue
        count = max(1, len(ind.calc_params))
        lines = list(ind.lines) if ind.lines else build_default_lines(count)
        idx = max(0, min(line_index, count - 1))
        while len(lines) <= idx:
            lines.append(IndicatorLineStyle(color=PADDING_COLOR))
        lines[idx] = replace(lines[idx], **updates)
        out.append(replace(ind, lines=lines))
    return out


def add_indicator_param(
    indicators: List[IndicatorConfig], name: str, value: float
) -> Tuple[List[IndicatorConfig], int]:
    """Insert a param (floored, sorted, deduplicated); returns (list, index of the param)."""
    value = math.floor(value)
    new_index = 0
    out = []
    for ind in indicators:
        if ind.name != name:
            out.append(ind)
            continue
        params = list(ind.calc_params)
        if value in params:
            out.append(ind)
            new_index = params.index(value)
            continue
        params = sorted(params + [value])
        new_index = params.index(value)
        lines = list(ind.lines) if ind.lines else build_default_lines(len(params))
        while len(lines) < len(params):
            lines.append(IndicatorLineStyle(color=PADDING_COLOR))
        out.append(replace(ind, calc_params=params, lines=lines))
    return out, new_index


def remove_indicator_param(indicators: List[IndicatorConfig], name: str, value: float) -> List[IndicatorConfig]:
    out = []
    for ind in indicators:
        if ind.name != name or value not in ind.calc_params:
            out.append(ind)
            continue
        idx = ind.calc_params.index(value)
        params = ind.calc_params[:idx] + ind.calc_params[idx + 1:]
        lines = [l for i, l in enumerate(ind.lines) if i != idx]
        out.append(replace(ind, calc_params=params, lines=lines))
    return out


# ---- value series ----
def sma_series(values: Sequence[float], period: int) -> Series:
    out: Series = []
    window_sum = 0.0
    for i, v in enumerate(values):
        window_sum += v
        if i >= period:
            window_sum -= values[i - period]
        out.append(window_sum / period if i >= period - 1 else None)
    return out


def ema_series(values: Sequence[float], period: int) -> Series:
    """EMA seeded with the SMA of the first `period` values."""
    out: Series = []
    alpha = 2.0 / (period + 1.0)
    prev: Optional[float] = None
    for i, v in enumerate(values):
        if i < period - 1:
            out.append(None)
            continue
        if prev is None:
            prev = sum(values[: period]) / period
        else:
            prev = alpha * v + (1 - alpha) * prev
        out.append(prev)
    return out


def rsi_series(closes: Sequence[float], period: int) -> Series:
    out: Series = [None] * len(closes)
    if len(closes) <= period:
        return out
    gains = [max(closes[i] - closes[i - 1], 0.0) for i in range(1, len(closes))]
    losses = [max(closes[i - 1] - closes[i], 0.0) for i in range(1, len(closes))]
    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    for i in range(period, len(closes)):
        if i > period:
            avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
        out[i] = 100.0 if avg_loss == 0 else 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    return out


def true_ranges(candles: Sequence[Candle]) -> List[float]:
    out = []
    prev_close: Optional[float] = None
    for c in candles:
        if prev_close is None:
            out.append(c.high - c.low)
        else:
            out.append(max(c.high - c.low, abs(c.high - prev_close), abs(c.low - prev_close)))
        prev_close = c.close
    return out


def atr_series(candles: Sequence[Candle], period: int) -> Series:
    trs = true_ranges(candles)
    out: Series = [None] * len(trs)
    if len(trs) < period:
        return out
    atr = sum(trs[:period]) / period
    out[period - 1] = atr
    for i in range(period, len(trs)):
        atr = (atr * (period - 1) + trs[i]) / period
        out[i] = atr
    return out


def vwap_series(candles: Sequence[Candle]) -> Series:
    """Session VWAP over typical price, reset at each UTC day."""
    out: Series = []
    day: Optional[int] = None
    cum_pv = cum_v = 0.0
    for c in candles:
        d = bucket_start_ms(c.epoch_ms, DAY_MS)
        if d != day:
            day, cum_pv, cum_v = d, 0.0, 0.0
        typical = (c.high + c.low + c.close) / 3.0
        cum_pv += typical * c.volume
        cum_v += c.volume
        out.append(cum_pv / cum_v if cum_v > 0 else None)
    return out


def bollinger_series(closes: Sequence[float], period: int, mult: float) -> Tuple[Series, Series, Series]:
    mid = sma_series(closes, period)
    upper: Series = []
    lower: Series = []
    for i, m in enumerate(mid):
        if m is None:
            upper.append(None)
            lower.append(None)
            continue
        window = closes[i - period + 1: i + 1]
        std = math.sqrt(sum((x - m) ** 2 for x in window) / period)
        upper.append(m + mult * std)
        lower.append(m - mult * std)
    return mid, upper, lower


def _periods(values: Sequence[float], indicator: str) -> List[int]:
    periods = []
    for v in values:
        if not math.isfinite(v) or int(v) < 1:
            raise ValueError(f"{indicator} period must be >= 1, got {v}")
        periods.append(int(v))
    return periods


def compute_overlay(config: IndicatorConfig, candles: Sequence[Candle]) -> List[Series]:
    """One value series per line; None marks warm-up bars."""
    closes = [c.close for c in candles]
    name = config.name.upper()
    params = _periods(config.calc_params[:1] if name == "BOLL" else config.calc_params, config.name)

    if name in ("MA", "SMA"):
        return [sma_series(closes, p) for p in params or [20]]
    if name == "EMA":
        return [ema_series(closes, p) for p in params or [20]]
    if name == "BOLL":
        period = params[0] if params else 20
        mult = float(config.calc_params[1]) if len(config.calc_params) > 1 else 2.0
        return list(bollinger_series(closes, period, mult))
    if name == "RSI":
        return [rsi_series(closes, p) for p in params or [14]]
    if name == "VOL":
        volumes = [c.volume for c in candles]
        return [list(volumes)] + [sma_series(volumes, p) for p in params]
    if name == "VWAP":
        return [vwap_series(candles)]
    if name == "ATR":
        return [atr_series(candles, p) for p in params or [14]]
    raise ValueError(f"Unsupported indicator: {config.name}")


class _Wilder:
    """Wilder running average; seeded with the first value."""

    def __init__(self, period: int) -> None:
        self.period = period
        self.value: Optional[float] = None

    def push(self, x: float) -> float:
        self.value = x if self.value is None else (self.value * (self.period - 1) + x) / self.period
        return self.value


@dataclass
class IndicatorEngine:
    """Incremental EMA/ATR/RSI over closed candles, neutral RSI during warm-up."""

    ema_fast_period: int = 20
    ema_slow_period: int = 50
    atr_period: int = 14
    rsi_period: int = 14

    def __post_init__(self) -> None:
        for label, period in (
            ("ema_fast_period", self.ema_fast_period),
            ("ema_slow_period", self.ema_slow_period),
            ("atr_period", self.atr_period),
            ("rsi_period", self.rsi_period),
        ):
            if period <= 1:
                raise ValueError(f"{label} must be > 1")
        self.reset()

    def reset(self) -> None:
        self._bars = 0
        self._prev_close: Optional[float] = None
        self._ema_fast: Optional[float] = None
        self._ema_slow: Optional[float] = None
        self._atr = _Wilder(self.atr_period)
        self._gain = _Wilder(self.rsi_period)
        self._loss = _Wilder(self.rsi_period)

    def is_ready(self) -> bool:
        return self._bars >= max(self.ema_slow_period, self.atr_period, self.rsi_period)

    def update(self, candle: Candle) -> Indicators:
        self._bars += 1
        close = float(candle.close)

        self._ema_fast = _ema_step(self._ema_fast, close, self.ema_fast_period)
        self._ema_slow = _ema_step(self._ema_slow, close, self.ema_slow_period)

        prev = self._prev_close
        if prev is None:
            tr = candle.high - candle.low
            change = 0.0
        else:
            tr = max(candle.high - candle.low, abs(candle.high - prev), abs(candle.low - prev))
            change = close - prev
        atr = self._atr.push(float(tr))
        avg_gain = self._gain.push(max(change, 0.0))
        avg_loss = self._loss.push(max(-change, 0.0))

        if self._bars < self.rsi_period:
            rsi = 50.0
        elif avg_loss == 0.0:
            rsi = 100.0
        else:
            rsi = 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)

        self._prev_close = close
        return Indicators(ema_fast=self._ema_fast, ema_slow=self._ema_slow, atr=atr, rsi=float(rsi))

    def update_many(self, candles: Iterable[Candle]) -> Optional[Indicators]:
        last: Optional[Indicators] = None
        for c in candles:
            last = self.update(c)
        return last


def _ema_step(prev: Optional[float], value: float, period: int) -> float:
    alpha = 2.0 / (period + 1.0)
    return value if prev is None else alpha * value + (1 - alpha) * prev
