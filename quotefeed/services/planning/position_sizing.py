"""Position sizing for a trade plan based on account size and risk %."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

MIN_RISK_PER_SHARE = 0.01
MIN_RISK_REWARD_TO_T1 = 1.5


@dataclass(frozen=True)
class PositionSize:
    max_risk_amount: float
    risk_per_share: float
    shares: int
    risk_reward_to_t1: float


def calculate_position_size(
    *,
    account_size: float,
    risk_pct: float,
    entry: float,
    stop: float,
    first_target: Optional[float] = None,
) -> PositionSize:
    """Shares to buy so that hitting the stop costs `risk_pct` % of the account.

    Without a first target, T1 is assumed at 2R.
    """
    max_risk = float(account_size) * float(risk_pct) / 100.0
    risk_per_share = max(MIN_RISK_PER_SHARE, abs(float(entry) - float(stop)))
    shares = math.floor(max_risk / risk_per_share)

    t1 = first_target if first_target is not None else entry + risk_per_share * 2
    rr = max(MIN_RISK_PER_SHARE, abs(float(t1) - float(entry))) / risk_per_share

    return PositionSize(
        max_risk_amount=max_risk,
        risk_per_share=risk_per_share,
        shares=shares,
        risk_reward_to_t1=rr,
    )


def build_trade_plan_notes(
    *,
    account_size: float,
    risk_pct: float,
    entry: float,
    stop: float,
    targets: Sequence[float] = (),
) -> List[str]:
    size = calculate_position_size(
        account_size=account_size,
        risk_pct=risk_pct,
        entry=entry,
        stop=stop,
        first_target=targets[0] if targets else None,
    )
    notes: List[str] = []
    if size.risk_reward_to_t1 < MIN_RISK_REWARD_TO_T1:
        notes.append("Risk/reward to first target is below 1.5:1; consider better entry or tighter stop.")
    if size.shares <= 0:
        notes.append("Position size is 0 due to tight risk; increase risk budget or adjust stop.")
    return notes
