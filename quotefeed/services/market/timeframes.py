"""Timeframe tags and bucket-boundary arithmetic."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Dict

from quotefeed.infrastructure.utils.timeutils import ms_to_datetime

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS
MONTH_MS = 30 * DAY_MS  # approximate

# Minutes per canonical tag; used to decide whether one series can be rolled into another.
TIMEFRAME_MINUTES: Dict[str, int] = {
    "1m": 1,
    "2m": 2,
    "3m": 3,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "2h": 120,
    "4h": 240,
    "1D": 1440,
    "1W": 10080,
    "1M": 43200,
}

_ALIASES: Dict[str, str] = {
    "1h": "1h",
    "1hr": "1h",
    "1hour": "1h",
    "2h": "2h",
    "4h": "4h",
    "1d": "1D",
    "1day": "1D",
    "1w": "1W",
    "1week": "1W",
    "1m": "1m",
    "5m": "5m",
    "15m": "15m",
    "30m": "30m",
    "1mo": "1M",
    "1month": "1M",
}

_TF_RE = re.compile(r"^\s*(\d*)\s*([A-Za-z]*)\s*$")


def normalize_timeframe(timeframe: str) -> str:
    """Map spelling variants ("1hr", "1day", "1mo") to canonical tags.

    Upper-case "1M" is already canonical (month) and is returned as is;
    unknown tags come back unchanged.
    """
    if timeframe in TIMEFRAME_MINUTES:
        return timeframe
    return _ALIASES.get(timeframe.lower(), timeframe)


def parse_timeframe_ms(timeframe: str) -> int:
    """Duration of one bar in milliseconds.

    "M", "mo" and "month" are months (30 days); lower-case "m"/"min" are minutes.
    An unrecognized unit counts as one minute.
    """
    match = _TF_RE.match(timeframe or "")
    if not match:
        return MINUTE_MS
    count = int(match.group(1)) if match.group(1) else 1
    if count <= 0:
        count = 1
    unit = match.group(2)

    if unit in ("M", "mo", "month", "months"):
        return count * MONTH_MS

    unit = unit.lower()
    if unit in ("s", "sec", "second", "seconds"):
        return count * SECOND_MS
    if unit in ("m", "min", "minute", "minutes"):
        return count * MINUTE_MS
    if unit in ("h", "hr", "hour", "hours"):
        return count * HOUR_MS
    if unit in ("d", "day", "days"):
        return count * DAY_MS
    if unit in ("w", "week", "weeks"):
        return count * WEEK_MS
    return MINUTE_MS


def is_second_timeframe(timeframe: str) -> bool:
    return parse_timeframe_ms(timeframe) < MINUTE_MS


def bucket_start_ms(ts_ms: int, timeframe_ms: int) -> int:
    """Floor an epoch-ms timestamp to the start of its bucket."""
    return (int(ts_ms) // timeframe_ms) * timeframe_ms


def bucket_open_time(ts_ms: int, timeframe_ms: int) -> datetime:
    return ms_to_datetime(bucket_start_ms(ts_ms, timeframe_ms))
