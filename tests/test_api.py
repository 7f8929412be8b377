"""
Tests for the scheduler-facing HTTP surface.
"""
import pytest
from fastapi.testclient import TestClient

import api_server
from config.settings import Settings
from evotrader.core.types import TradeMode
from evotrader.runtime import Services


class NoCredentialExchange:
    has_credentials = False


@pytest.fixture
def services(store):
    return Services(store=store, settings=Settings.load(), clock=store.clock, exchange=NoCredentialExchange())


@pytest.fixture
def client(services):
    api_server.app.dependency_overrides[api_server.get_services] = lambda: services
    yield TestClient(api_server.app)
    api_server.app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_status_reports_state_and_generation(client, store):
    body = client.get("/status").json()
    assert body["status"] == "stopped"
    assert body["generation"] is None

    client.post("/control", json={"action": "start"})
    body = client.get("/status").json()
    assert body["status"] == "running"
    assert body["generation"]["number"] == 1
    assert body["paper_account"]["cash"] == 1000.0


def test_rejected_control_is_a_conflict(client):
    response = client.post("/control", json={"action": "pause"})
    assert response.status_code == 409
    assert response.json()["reason"] == "invalid_transition_from_stopped"

    assert client.post("/control", json={"action": "restart"}).status_code == 422


def test_cycle_skips_while_stopped(client):
    body = client.post("/cycle").json()
    assert body["skipped"] is True
    assert body["reason"] == "system_not_running"


def test_arm_outside_live_mode_is_forbidden(client):
    response = client.post("/arm", json={"duration_minutes": 10})
    assert response.status_code == 403
    assert response.json()["reason"] == "NOT_LIVE_MODE"


def test_live_execute_maps_blocks_to_status_codes(client, store):
    store.system_state["trade_mode"] = TradeMode.LIVE.value

    response = client.post("/live-execute", json={"symbol": "BTC-USD", "side": "buy", "quote_usd": 4.0})
    assert response.status_code == 403
    assert response.json()["reason"] == "BLOCKED_NO_CREDENTIALS"

    response = client.post("/live-execute", json={"symbol": "BTC-USD", "side": "buy", "quote_usd": 0.0})
    assert response.status_code == 400
    assert response.json()["reason"] == "BLOCKED_INVALID_REQUEST"


def test_lifecycle_and_shadow_endpoints(client):
    assert client.post("/lifecycle").json()["reason"] == "no_active_generation"
    assert client.post("/shadow-outcomes").json()["processed"] == 0
    assert client.post("/fitness").json()["skipped"] is True


def test_loss_reaction_reset_endpoint(client, store):
    response = client.post("/loss-reaction", json={"action": "reset", "reason": "operator"})
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["session"]["consecutive_losses"] == 0
    assert store.config["loss_reaction"]["session"]["day_stopped"] is False
    assert [e["action"] for e in store.events] == ["loss_reaction_reset"]

    assert client.post("/loss-reaction", json={"action": "clear-cooldown"}).json()["ok"] is True
    assert client.post("/loss-reaction", json={"action": "forget"}).status_code == 422
