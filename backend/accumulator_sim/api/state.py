from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from accumulator_sim.infrastructure.deriv.deriv_ws_client import PriceFeedClient
from accumulator_sim.infrastructure.utils.config import AppConfig
from accumulator_sim.services.accounting.ledger import AccountLedger
from accumulator_sim.services.accounting.trade_history import TradeHistoryStore
from accumulator_sim.services.accumulator.engine import AccumulatorEngine
from accumulator_sim.services.monitoring.metrics import MetricsSnapshot, build_snapshot


@dataclass
class AppState:
    config: AppConfig
    ledger: AccountLedger
    history: TradeHistoryStore
    engine: AccumulatorEngine
    feed: Optional[PriceFeedClient] = None

    def metrics(self) -> MetricsSnapshot:
        return build_snapshot(self.engine, self.ledger, self.history, self.feed)


def get_state(request: Request) -> AppState:
    state = getattr(request.app.state, "sim", None)
    if state is None:
        raise RuntimeError("API state not initialized. Build it with create_app(state).")
    return state
