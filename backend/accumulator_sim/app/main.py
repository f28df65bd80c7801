"""Entrypoint.

Usage:
  python -m accumulator_sim.app.main api                      # run FastAPI server
  python -m accumulator_sim.app.main trade --stake 10         # run one contract to completion
  python -m accumulator_sim.app.main montecarlo --runs 1000   # outcome estimate per tick count
  python -m accumulator_sim.app.main ticks --symbol 1HZ25V    # print live feed ticks
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import List, Optional

import uvicorn

from accumulator_sim.infrastructure.logging.logging import configure_logging
from accumulator_sim.infrastructure.utils.config import load_config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser("accumulator-sim")
    parser.add_argument("--config", type=Path, default=None, help="YAML config path")
    parser.add_argument("--seed", type=int, default=None, help="Seed for simulated prices")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("api", help="Run the HTTP API")

    trade = sub.add_parser("trade", help="Run one accumulator contract")
    trade.add_argument("--market", default=None)
    trade.add_argument("--stake", type=float, required=True)
    trade.add_argument("--growth-rate", type=int, default=None)
    trade.add_argument("--take-profit", type=float, default=None)

    mc = sub.add_parser("montecarlo", help="Estimate win probability per tick count")
    mc.add_argument("--market", default=None)
    mc.add_argument("--stake", type=float, default=10.0)
    mc.add_argument("--growth-rate", type=int, default=None)
    mc.add_argument("--runs", type=int, default=1000)

    ticks = sub.add_parser("ticks", help="Stream live ticks from the feed")
    ticks.add_argument("--symbol", default=None)
    ticks.add_argument("--count", type=int, default=10)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = _build_parser().parse_args(argv)
    config = load_config(args.config)
    configure_logging(config.log_level, json_logs=config.json_logs)
    acc = config.accumulator

    if args.command == "api":
        from accumulator_sim.api.server import create_app
        from accumulator_sim.app.session import build_app_state

        app = create_app(build_app_state(config, seed=args.seed))
        uvicorn.run(app, host=config.api.host, port=config.api.port, reload=False)
        return

    if args.command == "trade":
        from accumulator_sim.app.session import run_trade_session
        from accumulator_sim.models.contract_models import AccumulatorParams

        params = AccumulatorParams(
            market=args.market or acc.default_market,
            stake=args.stake,
            growth_rate_percent=args.growth_rate or acc.default_growth_rate,
            take_profit=args.take_profit,
        )
        asyncio.run(run_trade_session(config, params, seed=args.seed))
        return

    if args.command == "montecarlo":
        from accumulator_sim.app.session import run_montecarlo

        points = run_montecarlo(
            config,
            market=args.market or acc.default_market,
            growth_rate_percent=args.growth_rate or acc.default_growth_rate,
            stake=args.stake,
            simulation_count=args.runs,
            seed=args.seed,
        )
        for p in points:
            print(f"{p.tick_count:>3}  win={p.win_probability:6.2f}%  avg_profit={p.average_profit:10.2f}")
        return

    if args.command == "ticks":
        from accumulator_sim.app.session import stream_ticks

        asyncio.run(stream_ticks(config, args.symbol or acc.default_market, args.count))
        return


if __name__ == "__main__":
    main()
