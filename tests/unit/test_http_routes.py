"""HTTP surface tests: a memory-backed supervisor behind FastAPI's TestClient."""

import time

import pytest
from fastapi.testclient import TestClient

from apps.api_keeper.config import Settings
from apps.api_keeper.core.domain.entities.agent_entity import PoolKey
from apps.api_keeper.core.domain.enums.agent_enums import RuleType
from apps.api_keeper.main import create_app
from apps.api_keeper.workers.keeper_supervisor import KeeperSupervisor

from conftest import OWNER, USDC, WETH

TOKEN = "test-admin-token"
ADMIN = {"X-Admin-Token": TOKEN}


@pytest.fixture
def supervisor() -> KeeperSupervisor:
    settings = Settings(ADMIN_API_TOKEN=TOKEN, POLL_INTERVAL_SEC=0, RETRY_DELAY_SEC=0)
    return KeeperSupervisor(settings=settings)


@pytest.fixture
def client(supervisor):
    with TestClient(create_app(supervisor)) as c:
        yield c


def _create_agent(supervisor) -> int:
    agent = supervisor.agents.create_agent(OWNER, PoolKey(currency0=WETH, currency1=USDC))
    supervisor.agents.add_rule(agent.agent_id, OWNER, RuleType.TIME_WEIGHTED, 0, 0, 60)
    return agent.agent_id


class TestPublicRoutes:

    def test_health(self, client) -> None:
        body = client.get("/api/health").json()
        assert body["status"] == "ok"
        assert body["off_chain_available"] is False

    def test_config_hides_secrets(self, client) -> None:
        body = client.get("/api/config").json()
        assert body["storage_backend"] == "memory"
        assert TOKEN not in str(body)
        assert not any("key" in k.lower() or "token" in k.lower() for k in body)

    def test_empty_history(self, client) -> None:
        assert client.get("/api/executions").json() == {"executions": [], "total": 0}
        stats = client.get("/api/stats").json()
        assert stats["total"] == 0
        assert "uptime_sec" in stats

    def test_limit_is_bounded(self, client) -> None:
        assert client.get("/api/executions", params={"limit": 5000}).status_code == 422

    def test_unknown_agent_balances(self, client) -> None:
        assert client.get("/api/agents/99/balances").status_code == 404


class TestAdminRoutes:

    def test_token_required(self, client, supervisor) -> None:
        agent_id = _create_agent(supervisor)
        url = f"/admin/agents/{agent_id}/deposit"
        assert client.post(url, json={"token": WETH, "amount": 1}).status_code == 401
        assert client.post(url, json={"token": WETH, "amount": 1}, headers={"X-Admin-Token": "nope"}).status_code == 401

    def test_deposit_and_overdraw(self, client, supervisor) -> None:
        agent_id = _create_agent(supervisor)

        r = client.post(f"/admin/agents/{agent_id}/deposit", json={"token": WETH, "amount": "1000"}, headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["balances"] == {WETH: "1000"}

        r = client.post(f"/admin/agents/{agent_id}/withdraw", json={"token": WETH, "amount": 2000}, headers=ADMIN)
        assert r.status_code == 409
        assert r.json()["detail"] == "Insufficient agent balance"

        assert client.get(f"/api/agents/{agent_id}/balances").json()["balances"] == {WETH: "1000"}

    def test_push_signal(self, client) -> None:
        body = {"pool_id": "0x" + "AB" * 32, "signal_type": 0, "magnitude": 150, "timestamp": 1_700_000_000}
        r = client.post("/admin/signals", json=body, headers=ADMIN)
        assert r.json() == {"accepted": True, "latest": True}

        r = client.post("/admin/signals", json=body, headers=ADMIN)
        assert r.json()["latest"] is False

    def test_manual_evaluation_executes_ready_rule(self, client, supervisor) -> None:
        agent_id = _create_agent(supervisor)
        client.post(f"/admin/agents/{agent_id}/deposit", json={"token": WETH, "amount": 1000}, headers=ADMIN)

        assert client.post("/admin/evaluate", headers=ADMIN).json() == {"queued": True}

        executions = []
        for _ in range(100):
            executions = client.get("/api/executions", params={"agent_id": agent_id}).json()["executions"]
            if executions:
                break
            time.sleep(0.02)

        assert executions[0]["outcome"] == "SUCCESS"
        assert executions[0]["path"] == "ON_CHAIN"
        assert executions[0]["amount_in"] == 100
        status = client.get("/api/agents/status").json()
        assert status[0]["agent_id"] == agent_id
        assert status[0]["total_executions"] == 1
