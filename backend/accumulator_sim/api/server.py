"""HTTP control surface for the presentation layer."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from accumulator_sim.api.state import AppState, get_state
from accumulator_sim.infrastructure.deriv.deriv_ws_client import FeedError
from accumulator_sim.infrastructure.logging.logging import get_logger
from accumulator_sim.models.contract_models import GROWTH_RATE_TOLERANCE, AccumulatorParams, InvalidStateTransition
from accumulator_sim.models.market_models import MARKETS
from accumulator_sim.services.accounting.ledger import InsufficientBalance
from accumulator_sim.services.accumulator.monte_carlo import run_simulation

JsonDict = Dict[str, Any]


class SimulationPayload(BaseModel):
    market: str = Field(default="1HZ25V")
    growth_rate_percent: int = Field(default=3)
    stake: float = Field(default=10.0, gt=0)
    simulation_count: int = Field(default=1000, ge=1, le=20_000)
    seed: Optional[int] = None


def create_app(state: AppState) -> FastAPI:
    log = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("api_started", price_source=state.config.accumulator.price_source)
        yield
        # Settle any open contract before the loop goes away.
        await state.engine.aclose()
        if state.feed is not None:
            await state.feed.close()
        log.info("api_stopped")

    app = FastAPI(title="Accumulator Simulator API", version="0.1.0", lifespan=lifespan)
    app.state.sim = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=state.config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health(s: AppState = Depends(get_state)) -> JsonDict:
        return {
            "ok": True,
            "price_source": s.config.accumulator.price_source,
            "connected": s.feed.is_connected if s.feed is not None else None,
        }

    @app.get("/markets")
    def markets() -> JsonDict:
        return {
            "ok": True,
            "markets": [{"symbol": sym, "label": label} for sym, label in MARKETS.items()],
            "growth_rates": [{"percent": r, "tolerance": t} for r, t in GROWTH_RATE_TOLERANCE.items()],
        }

    @app.get("/metrics")
    async def metrics(s: AppState = Depends(get_state)) -> JsonDict:
        return {"ok": True, "metrics": asdict(s.metrics())}

    @app.get("/contract")
    async def contract(s: AppState = Depends(get_state)) -> JsonDict:
        last = s.engine.last_closed
        return {
            "ok": True,
            "state": asdict(s.engine.state()),
            "contract": asdict(s.engine.contract) if s.engine.is_active else None,
            "last_closed": asdict(last) if last is not None else None,
        }

    # Engine commands run on the event loop (async def), never in the threadpool.
    @app.post("/contract/start")
    async def start_contract(params: AccumulatorParams, s: AppState = Depends(get_state)) -> JsonDict:
        try:
            c = await s.engine.start(params)
        except InsufficientBalance as e:
            raise HTTPException(status_code=400, detail=str(e))
        except InvalidStateTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except FeedError as e:
            log.error("contract_start_failed", market=params.market, error=str(e))
            raise HTTPException(status_code=502, detail=f"price feed unavailable: {e}")
        return {"ok": True, "contract": asdict(c), "balance": s.ledger.balance}

    @app.post("/contract/stop")
    async def stop_contract(s: AppState = Depends(get_state)) -> JsonDict:
        snapshot = s.engine.stop()
        if snapshot is None:
            raise HTTPException(status_code=409, detail="no active contract")
        # Price source is detached before the caller can start the next contract.
        await s.engine.wait_closed()
        return {"ok": True, "contract": asdict(snapshot), "balance": s.ledger.balance}

    @app.get("/balance")
    def balance(s: AppState = Depends(get_state)) -> JsonDict:
        return {"ok": True, "balance": s.ledger.balance, "currency": s.ledger.currency}

    @app.get("/trades")
    def trades(market: Optional[str] = None, limit: int = 200, s: AppState = Depends(get_state)) -> JsonDict:
        rows = s.history.entries(market=market, limit=limit)
        # Newest first, like the history page.
        return {"ok": True, "trades": [asdict(r) for r in reversed(rows)]}

    @app.get("/trades/stats")
    def trade_stats(market: Optional[str] = None, s: AppState = Depends(get_state)) -> JsonDict:
        return {"ok": True, "stats": asdict(s.history.stats(market=market)), "markets": s.history.markets()}

    @app.post("/simulation")
    def simulation(payload: SimulationPayload, s: AppState = Depends(get_state)) -> JsonDict:
        if payload.market not in MARKETS:
            raise HTTPException(status_code=400, detail=f"unknown market: {payload.market}")
        try:
            points = run_simulation(
                market=payload.market,
                growth_rate_percent=payload.growth_rate_percent,
                stake=payload.stake,
                simulation_count=payload.simulation_count,
                max_ticks=s.engine.max_ticks,
                simulator_config=s.config.simulator,
                seed=payload.seed,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"ok": True, "results": [asdict(p) for p in points]}

    @app.get("/history/{symbol}")
    async def history(
        symbol: str,
        granularity: int = 60,
        count: int = 100,
        style: str = "candles",
        s: AppState = Depends(get_state),
    ) -> JsonDict:
        if s.feed is None:
            raise HTTPException(status_code=503, detail="price feed not configured")
        try:
            candles = await s.feed.fetch_history(symbol, granularity=granularity, count=count, style=style)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except FeedError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"ok": True, "symbol": symbol, "candles": [asdict(c) for c in candles]}

    return app
