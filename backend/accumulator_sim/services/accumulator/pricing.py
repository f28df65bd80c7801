"""Accumulator payout arithmetic."""

from __future__ import annotations

import math

from accumulator_sim.models.contract_models import GROWTH_RATE_TOLERANCE


def tolerance_margin(growth_rate_percent: int) -> float:
    try:
        return GROWTH_RATE_TOLERANCE[growth_rate_percent]
    except KeyError:
        raise ValueError(f"unsupported growth rate: {growth_rate_percent}") from None


def compound_profit(stake: float, growth_rate_percent: float, tick_count: int) -> float:
    """Profit after ``tick_count`` accepted ticks.

    Always recomputed from (stake, rate, ticks) instead of multiplying the
    previous value, so repeated calls never drift.
    """
    if tick_count <= 0:
        return 0.0
    return stake * (1 + growth_rate_percent / 100) ** tick_count - stake


def price_change(new_price: float, last_price: float) -> float:
    """Fractional move between two consecutive prices."""
    if last_price <= 0:
        return math.inf
    return abs(new_price - last_price) / last_price


def is_within_tolerance(new_price: float, last_price: float, margin: float) -> bool:
    return price_change(new_price, last_price) <= margin
