"""Tests for session wiring and the CLI entrypoint."""

import asyncio

import pytest
import structlog

from accumulator_sim.app.main import main
from accumulator_sim.app.session import build_app_state, run_montecarlo, run_trade_session
from accumulator_sim.infrastructure.utils.config import AppConfig
from accumulator_sim.models.contract_models import AccumulatorParams, ContractStatus
from accumulator_sim.services.accounting.ledger import InsufficientBalance
from accumulator_sim.services.market.price_sources import FeedPriceSource, SimulatedPriceSource


def _config(**accumulator):
    return AppConfig.model_validate(
        {
            "accumulator": {"tick_interval_sec": 0.0, "max_ticks": 5, **accumulator},
            "simulator": {"volatility_by_market": {"1HZ10V": 0.0}},
        }
    )


class TestBuildAppState:
    def test_simulator_source(self):
        state = build_app_state(_config())
        assert isinstance(state.engine._source, SimulatedPriceSource)
        assert state.ledger.balance == 50_000.0
        assert state.engine.max_ticks == 5
        assert state.feed is not None
        assert not state.feed.is_connected

    def test_feed_source(self):
        state = build_app_state(_config(price_source="feed"))
        assert isinstance(state.engine._source, FeedPriceSource)


class TestRunTradeSession:
    def test_flat_market_wins_at_max_ticks(self):
        params = AccumulatorParams(market="1HZ10V", stake=10.0, growth_rate_percent=1)
        record = asyncio.run(run_trade_session(_config(), params, seed=1))
        assert record.status is ContractStatus.WON
        assert record.close_reason == "max_ticks"
        assert record.tick_count == 5

    def test_log_context_cleared_after_run(self):
        params = AccumulatorParams(market="1HZ10V", stake=10.0, growth_rate_percent=1)

        async def scenario():
            await run_trade_session(_config(), params, seed=1)
            return structlog.contextvars.get_contextvars()

        assert asyncio.run(scenario()) == {}

    def test_log_context_cleared_on_failure(self):
        params = AccumulatorParams(market="1HZ10V", stake=60_000.0, growth_rate_percent=1)

        async def scenario():
            with pytest.raises(InsufficientBalance):
                await run_trade_session(_config(), params, seed=1)
            return structlog.contextvars.get_contextvars()

        assert asyncio.run(scenario()) == {}


class TestMonteCarloSession:
    def test_returns_points(self):
        points = run_montecarlo(_config(), market="1HZ25V", growth_rate_percent=3, stake=10.0, simulation_count=50, seed=2)
        assert len(points) == 5


class TestMain:
    def test_montecarlo_command(self, tmp_path, capsys):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("json_logs: false\naccumulator:\n  max_ticks: 4\n", encoding="utf-8")
        main(["--config", str(cfg), "--seed", "1", "montecarlo", "--runs", "20", "--stake", "5"])
        lines = [line for line in capsys.readouterr().out.splitlines() if "win=" in line]
        assert len(lines) == 4

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main([])
