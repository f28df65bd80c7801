"""Wiring of config -> stores -> price source -> engine, plus the CLI sessions."""

from __future__ import annotations

import uuid
from typing import List, Optional

from accumulator_sim.api.state import AppState
from accumulator_sim.infrastructure.deriv.deriv_ws_client import PriceFeedClient
from accumulator_sim.infrastructure.logging.logging import bind_session, clear_session, get_logger
from accumulator_sim.infrastructure.utils.config import AppConfig
from accumulator_sim.models.contract_models import AccumulatorParams, ContractSnapshot
from accumulator_sim.services.accounting.ledger import AccountLedger
from accumulator_sim.services.accounting.trade_history import TradeHistoryStore
from accumulator_sim.services.accumulator.engine import AccumulatorEngine, ContractEvent
from accumulator_sim.services.accumulator.monte_carlo import SimulationPoint, run_simulation
from accumulator_sim.services.market.price_sources import FeedPriceSource, PriceSource, SimulatedPriceSource


def build_app_state(config: AppConfig, *, seed: Optional[int] = None) -> AppState:
    """Build the session stores and an engine on the configured price source.

    A feed client is always created so candle history is available; it only
    connects on first use.
    """
    feed = PriceFeedClient.from_config(config.deriv)
    source: PriceSource
    if config.accumulator.price_source == "feed":
        source = FeedPriceSource(feed)
    else:
        source = SimulatedPriceSource(
            config.simulator,
            interval_sec=config.accumulator.tick_interval_sec,
            seed=seed,
        )

    ledger = AccountLedger(config.account.initial_balance, currency=config.account.currency)
    history = TradeHistoryStore()
    engine = AccumulatorEngine(
        ledger,
        history,
        source,
        max_ticks=config.accumulator.max_ticks,
        max_payout=config.accumulator.max_payout,
    )
    return AppState(config=config, ledger=ledger, history=history, engine=engine, feed=feed)


async def run_trade_session(
    config: AppConfig,
    params: AccumulatorParams,
    *,
    seed: Optional[int] = None,
) -> ContractSnapshot:
    """Run a single contract to completion and return its settled record.

    Session fields are bound to the logging context for the run and cleared
    on the way out.
    """
    bind_session(session=uuid.uuid4().hex[:8], price_source=config.accumulator.price_source)
    try:
        return await _trade_session(config, params, seed=seed)
    finally:
        clear_session()


async def _trade_session(
    config: AppConfig,
    params: AccumulatorParams,
    *,
    seed: Optional[int],
) -> ContractSnapshot:
    log = get_logger("session")
    log.info(
        "config_loaded",
        app_id=config.deriv.app_id,
        has_token=bool(config.deriv.api_token),
        max_ticks=config.accumulator.max_ticks,
        max_payout=config.accumulator.max_payout,
    )

    state = build_app_state(config, seed=seed)
    engine = state.engine

    def on_event(event: ContractEvent) -> None:
        if event.kind == "tick":
            log.info(
                "tick",
                n=event.state.tick_count,
                price=event.state.last_price,
                profit=round(event.state.current_profit, 2),
            )

    engine.add_listener(on_event)
    try:
        await engine.start(params)
        snapshot = await engine.wait_closed()
    finally:
        await engine.aclose()
        if state.feed is not None:
            await state.feed.close()

    assert snapshot is not None
    log.info(
        "session_done",
        status=snapshot.status.value,
        reason=snapshot.close_reason,
        ticks=snapshot.tick_count,
        profit=round(snapshot.profit, 2),
        balance=state.ledger.balance,
        currency=state.ledger.currency,
    )
    return snapshot


def run_montecarlo(
    config: AppConfig,
    *,
    market: str,
    growth_rate_percent: int,
    stake: float,
    simulation_count: int = 1000,
    seed: Optional[int] = None,
) -> List[SimulationPoint]:
    log = get_logger("montecarlo")
    points = run_simulation(
        market=market,
        growth_rate_percent=growth_rate_percent,
        stake=stake,
        simulation_count=simulation_count,
        max_ticks=config.accumulator.max_ticks,
        simulator_config=config.simulator,
        seed=seed,
    )
    best = max(points, key=lambda p: p.average_profit)
    log.info(
        "simulation_done",
        market=market,
        growth_rate=growth_rate_percent,
        runs=simulation_count,
        best_tick_count=best.tick_count,
        best_average_profit=round(best.average_profit, 2),
        best_win_probability=round(best.win_probability, 2),
    )
    return points


async def stream_ticks(config: AppConfig, symbol: str, count: int = 10) -> int:
    """Print ``count`` live ticks for ``symbol``; returns how many arrived."""
    log = get_logger("ticks")
    received = 0
    async with PriceFeedClient.from_config(config.deriv) as client:
        sub = await client.subscribe(symbol)
        try:
            async for tick in sub:
                received += 1
                log.info("tick", symbol=tick.symbol, epoch=tick.epoch, price=tick.price)
                if received >= count:
                    break
        finally:
            await sub.unsubscribe()
    return received
