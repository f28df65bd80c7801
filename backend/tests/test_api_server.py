"""Tests for the HTTP control surface (FastAPI TestClient)."""

import asyncio
import socket

import pytest
from fastapi.testclient import TestClient

from accumulator_sim.api.server import create_app
from accumulator_sim.app.session import build_app_state
from accumulator_sim.infrastructure.utils.config import AppConfig
from accumulator_sim.services.accumulator.engine import AccumulatorEngine


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _config(**overrides):
    data = {
        # Slow cadence: no simulated tick lands while a test is running.
        "accumulator": {"tick_interval_sec": 60.0},
        "deriv": {
            "websocket_url": f"ws://127.0.0.1:{_free_port()}",
            "max_retries": 0,
            "connect_timeout_sec": 1.0,
        },
    }
    data.update(overrides)
    return AppConfig.model_validate(data)


@pytest.fixture
def state():
    return build_app_state(_config(), seed=1)


@pytest.fixture
def client(state):
    with TestClient(create_app(state)) as c:
        yield c


START = {"market": "1HZ25V", "stake": 100.0, "growth_rate_percent": 3}


class SlowCloseSource:
    """Flat price source whose close() takes a while to finish."""

    def __init__(self):
        self.opened = 0
        self.closed = False

    async def open(self, market):
        self.opened += 1
        self.closed = False
        return 1000.0

    async def next_price(self):
        await asyncio.sleep(60)
        return 1000.0

    async def close(self):
        await asyncio.sleep(0.2)
        self.closed = True


class TestReadEndpoints:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["ok"] is True
        assert body["price_source"] == "simulator"
        assert body["connected"] is False

    def test_markets(self, client):
        body = client.get("/markets").json()
        assert [m["symbol"] for m in body["markets"]] == ["1HZ10V", "1HZ25V", "1HZ50V", "1HZ75V", "1HZ100V"]
        assert [g["percent"] for g in body["growth_rates"]] == [1, 2, 3, 4, 5]

    def test_balance(self, client):
        body = client.get("/balance").json()
        assert body == {"ok": True, "balance": 50_000.0, "currency": "USD"}

    def test_idle_contract_state(self, client):
        body = client.get("/contract").json()
        assert body["contract"] is None
        assert body["last_closed"] is None
        assert body["state"]["tick_count"] == 0
        assert body["state"]["current_profit"] == 0.0

    def test_metrics(self, client):
        metrics = client.get("/metrics").json()["metrics"]
        assert metrics["balance"] == 50_000.0
        assert metrics["trades"] == 0
        assert metrics["status"] is None


class TestContractLifecycle:
    def test_start_then_stop(self, client):
        resp = client.post("/contract/start", json=START)
        assert resp.status_code == 200
        body = resp.json()
        assert body["contract"]["status"] == "active"
        assert body["contract"]["entry_price"] == 1000.0
        assert body["balance"] == 49_900.0

        state = client.get("/contract").json()
        assert state["state"]["status"] == "active"
        assert state["contract"]["market"] == "1HZ25V"

        resp = client.post("/contract/stop")
        assert resp.status_code == 200
        closed = resp.json()["contract"]
        assert closed["status"] == "cancelled"
        assert closed["close_reason"] == "user_stop"
        assert closed["payout"] == 100.0
        assert resp.json()["balance"] == 50_000.0

        trades = client.get("/trades").json()["trades"]
        assert len(trades) == 1
        assert trades[0]["contract_id"] == closed["contract_id"]
        assert client.get("/contract").json()["last_closed"]["status"] == "cancelled"

    def test_second_start_conflicts(self, client):
        assert client.post("/contract/start", json=START).status_code == 200
        resp = client.post("/contract/start", json=START)
        assert resp.status_code == 409
        assert client.get("/balance").json()["balance"] == 49_900.0
        client.post("/contract/stop")

    def test_stop_when_idle(self, client):
        assert client.post("/contract/stop").status_code == 409

    def test_insufficient_balance(self, client):
        resp = client.post("/contract/start", json={**START, "stake": 60_000.0})
        assert resp.status_code == 400
        assert "insufficient balance" in resp.json()["detail"]
        assert client.get("/balance").json()["balance"] == 50_000.0
        assert client.get("/contract").json()["contract"] is None

    @pytest.mark.parametrize(
        "body",
        [
            {**START, "stake": -1.0},
            {**START, "growth_rate_percent": 8},
            {**START, "market": "R_100"},
            {**START, "take_profit": 0},
        ],
    )
    def test_invalid_params(self, client, body):
        assert client.post("/contract/start", json=body).status_code == 422

    def test_stop_waits_for_source_release(self, state):
        source = SlowCloseSource()
        state.engine = AccumulatorEngine(state.ledger, state.history, source)
        with TestClient(create_app(state)) as c:
            assert c.post("/contract/start", json=START).status_code == 200
            assert c.post("/contract/stop").status_code == 200
            assert source.closed
            assert source.opened == 1

    def test_shutdown_settles_open_contract(self, state):
        with TestClient(create_app(state)) as c:
            assert c.post("/contract/start", json=START).status_code == 200
        assert not state.engine.is_active
        assert len(state.history) == 1
        assert state.ledger.balance == 50_000.0


class TestFeedPriceSource:
    def test_feed_down_is_bad_gateway(self):
        state = build_app_state(_config(accumulator={"tick_interval_sec": 60.0, "price_source": "feed"}))
        with TestClient(create_app(state)) as c:
            resp = c.post("/contract/start", json=START)
            assert resp.status_code == 502
            assert c.get("/balance").json()["balance"] == 50_000.0


class TestTradeHistory:
    def test_filter_and_stats(self, client):
        for market in ("1HZ10V", "1HZ50V", "1HZ10V"):
            client.post("/contract/start", json={**START, "market": market})
            client.post("/contract/stop")

        assert len(client.get("/trades", params={"market": "1HZ10V"}).json()["trades"]) == 2
        assert len(client.get("/trades", params={"limit": 1}).json()["trades"]) == 1

        body = client.get("/trades/stats").json()
        assert body["stats"]["trades"] == 3
        assert body["stats"]["cancelled"] == 3
        assert body["markets"] == ["1HZ10V", "1HZ50V"]

    def test_newest_first(self, client):
        ids = []
        for _ in range(2):
            client.post("/contract/start", json=START)
            ids.append(client.post("/contract/stop").json()["contract"]["contract_id"])
        trades = client.get("/trades").json()["trades"]
        assert [t["contract_id"] for t in trades] == list(reversed(ids))


class TestSimulationAndHistory:
    def test_simulation(self, client):
        resp = client.post("/simulation", json={"market": "1HZ25V", "growth_rate_percent": 2, "stake": 10, "simulation_count": 200, "seed": 3})
        assert resp.status_code == 200
        results = resp.json()["results"]
        assert len(results) == 45
        assert results[0]["tick_count"] == 1
        assert results[0]["win_probability"] >= results[-1]["win_probability"]

    def test_simulation_unknown_market(self, client):
        assert client.post("/simulation", json={"market": "R_10"}).status_code == 400

    def test_history_without_feed(self, state):
        state.feed = None
        with TestClient(create_app(state)) as c:
            assert c.get("/history/1HZ25V").status_code == 503

    def test_history_feed_down(self, client):
        assert client.get("/history/1HZ25V").status_code == 502
