"""Tests for the status and control API."""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api import router
from app.models import OrderConfig, Signal, SignalDirection
from core.orders import OrderStateMachine


class StubTrader:
    """Just enough of Trader for the routes."""

    def __init__(self):
        self.config = SimpleNamespace(sec_code=["SBER", "GAZP"])
        self.order_manager = SimpleNamespace(accepting=True)
        self.machine = OrderStateMachine(OrderConfig(class_code="TQBR"))
        self.flattened: list[str] = []

    def flatten(self, sec_code: str) -> Signal:
        self.flattened.append(sec_code)
        return Signal(
            sec_code=sec_code,
            direction=SignalDirection.FLAT,
            timestamp=datetime(2024, 3, 1, 7, 0, tzinfo=timezone.utc),
            source="manual",
        )

    def status(self) -> dict:
        return {"started": True, "connector": {"state": "connected"}}


@pytest.fixture
def trader():
    return StubTrader()


@pytest.fixture
def app(trader):
    app = FastAPI()
    app.include_router(router, prefix="/api")
    app.state.trader = trader
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


class TestRoutes:
    def test_status(self, client):
        response = client.get("/api/status")
        assert response.status_code == 200
        assert response.json()["connector"]["state"] == "connected"

    def test_positions(self, client, trader):
        trader.machine.on_signal(
            Signal(
                sec_code="SBER",
                direction=SignalDirection.LONG,
                timestamp=datetime(2024, 3, 1, 7, 0, tzinfo=timezone.utc),
            )
        )
        response = client.get("/api/positions")
        assert response.json() == [
            {"sec_code": "SBER", "side": "flat", "quantity": 0, "state": "pending_entry"}
        ]

    def test_flatten(self, client, trader):
        response = client.post("/api/instruments/SBER/flatten")

        assert response.status_code == 200
        body = response.json()
        assert body["sec_code"] == "SBER"
        assert body["direction"] == "flat"
        assert trader.flattened == ["SBER"]

    def test_flatten_unknown_instrument(self, client, trader):
        response = client.post("/api/instruments/LKOH/flatten")
        assert response.status_code == 404
        assert trader.flattened == []

    def test_flatten_while_stopping(self, client, trader):
        trader.order_manager.accepting = False
        response = client.post("/api/instruments/SBER/flatten")
        assert response.status_code == 409

    def test_shutdown_sets_exit_flag(self, client, app):
        server = SimpleNamespace(should_exit=False)
        app.state.server = server

        response = client.post("/api/shutdown")

        assert response.status_code == 200
        assert response.json() == {"status": "shutting_down"}
        assert server.should_exit

    def test_shutdown_without_server(self, client):
        assert client.post("/api/shutdown").status_code == 503

    def test_trader_not_running(self):
        app = FastAPI()
        app.include_router(router, prefix="/api")
        response = TestClient(app).get("/api/status")
        assert response.status_code == 503
