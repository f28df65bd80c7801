"""In-memory metrics snapshot for the API + console."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from accumulator_sim.infrastructure.deriv.deriv_ws_client import PriceFeedClient
    from accumulator_sim.services.accounting.ledger import AccountLedger
    from accumulator_sim.services.accounting.trade_history import TradeHistoryStore
    from accumulator_sim.services.accumulator.engine import AccumulatorEngine


@dataclass
class MetricsSnapshot:
    connected: bool = False
    symbol: str = ""
    last_tick_price: Optional[float] = None
    balance: Optional[float] = None
    currency: str = "USD"
    status: Optional[str] = None
    tick_count: int = 0
    current_profit: float = 0.0
    trades: int = 0
    wins: int = 0
    losses: int = 0
    net_profit: float = 0.0
    win_rate: float = 0.0


def build_snapshot(
    engine: "AccumulatorEngine",
    ledger: "AccountLedger",
    history: "TradeHistoryStore",
    client: Optional["PriceFeedClient"] = None,
) -> MetricsSnapshot:
    state = engine.state()
    stats = history.stats()
    return MetricsSnapshot(
        # Simulator mode has no transport, it is always "connected".
        connected=client.is_connected if client is not None else True,
        symbol=state.market or "",
        last_tick_price=state.last_price,
        balance=ledger.balance,
        currency=ledger.currency,
        status=state.status.value if state.status is not None else None,
        tick_count=state.tick_count,
        current_profit=round(state.current_profit, 2),
        trades=stats.trades,
        wins=stats.wins,
        losses=stats.losses,
        net_profit=stats.net_profit,
        win_rate=stats.win_rate,
    )
