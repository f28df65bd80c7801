"""Monte-Carlo estimate of accumulator outcomes per target tick count.

For every target ``n`` in 1..max_ticks we report the share of simulated
trades that survive ``n`` ticks inside the tolerance band and the average
profit of holding to ``n`` ticks (losing trades count as zero profit, as in
the dashboard's simulation panel).
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List, Optional

from accumulator_sim.infrastructure.utils.config import SimulatorConfig
from accumulator_sim.services.accumulator.pricing import compound_profit, is_within_tolerance, tolerance_margin
from accumulator_sim.services.market.price_simulator import PriceSimulator


@dataclass(frozen=True)
class SimulationPoint:
    tick_count: int
    average_profit: float
    win_probability: float  # percent


def _survived_ticks(simulator: PriceSimulator, margin: float, max_ticks: int) -> int:
    """Number of consecutive in-range ticks before the first breach (capped at max_ticks)."""
    last = simulator.current_price
    for tick in range(max_ticks):
        price = simulator.next_price()
        if not is_within_tolerance(price, last, margin):
            return tick
        last = price
    return max_ticks


def run_simulation(
    *,
    market: str,
    growth_rate_percent: int,
    stake: float,
    simulation_count: int = 1000,
    max_ticks: int = 45,
    simulator_config: Optional[SimulatorConfig] = None,
    seed: Optional[int] = None,
) -> List[SimulationPoint]:
    if stake <= 0:
        raise ValueError("stake must be > 0")
    if simulation_count < 1:
        raise ValueError("simulation_count must be >= 1")
    if max_ticks < 1:
        raise ValueError("max_ticks must be >= 1")

    cfg = simulator_config or SimulatorConfig()
    margin = tolerance_margin(growth_rate_percent)
    simulator = PriceSimulator(
        cfg.initial_price,
        cfg.volatility_for(market),
        cfg.trend,
        rng=random.Random(seed),
    )

    # One path per trial; a path that survives k ticks is a win for every target n <= k.
    survived: List[int] = []
    for _ in range(simulation_count):
        simulator.reset()
        survived.append(_survived_ticks(simulator, margin, max_ticks))

    results: List[SimulationPoint] = []
    for n in range(1, max_ticks + 1):
        wins = sum(1 for s in survived if s >= n)
        profit_if_won = compound_profit(stake, growth_rate_percent, n)
        results.append(
            SimulationPoint(
                tick_count=n,
                average_profit=wins * profit_if_won / simulation_count,
                win_probability=wins / simulation_count * 100.0,
            )
        )
    return results
