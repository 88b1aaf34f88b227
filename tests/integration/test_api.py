"""
Integration tests for API Service

Runs the FastAPI app against an OrchestratorService wired to a scripted
transport. The lifespan is not entered, so no environment or broker is needed.
"""

import pytest
from fastapi.testclient import TestClient

from api.main import app
from orchestrator.main import OrchestratorService
from orchestrator.notifications import SIGNATURE_HEADER, TIMESTAMP_HEADER
from orchestrator.verifier import sign
from shared.config import OrchestratorSettings

WEBHOOK_SECRET = "test-secret"


@pytest.fixture
def transport(fake_transport):
    return fake_transport


@pytest.fixture
def service(transport, make_agent):
    settings = OrchestratorSettings(
        agents=[make_agent("alpha", auth_token="secret-token"), make_agent("beta")],
        webhook_secret=WEBHOOK_SECRET,
        callback_url_template="https://me.test/webhooks/{task_type}/{agent_id}/{operation_id}",
    )
    return OrchestratorService(settings, transport=transport)


@pytest.fixture
def client(service):
    app.state.service = service
    yield TestClient(app)
    del app.state.service


def signed_headers(payload, secret=WEBHOOK_SECRET):
    signature, ts = sign(payload, secret=secret)
    return {SIGNATURE_HEADER: signature, TIMESTAMP_HEADER: str(ts)}


def start_deferred(client, transport, operation_id="op-api"):
    transport.script("alpha", {"status": "working", "task_id": "w-api"})
    response = client.post(
        "/tasks/create_media_buy",
        json={"args": {"budget": 100}, "agent_ids": ["alpha"], "operation_id": operation_id}
    )
    assert response.status_code == 200
    return response.json()


class TestAPIBasics:
    """Test basic API functionality"""

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "TaskRelay API"
        assert "version" in data

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["agents"] == 2
        assert data["rabbitmq"] == "disconnected"
        assert "timestamp" in data

    def test_service_not_started(self):
        response = TestClient(app).get("/health")

        assert response.status_code == 503

    def test_agents_hide_credentials(self, client):
        response = client.get("/agents")

        assert response.status_code == 200
        agents = response.json()
        assert [a["id"] for a in agents] == ["alpha", "beta"]
        assert all("auth_token" not in a for a in agents)


class TestTasksEndpoint:
    """Test POST /tasks/{operation_name}"""

    def test_fan_out(self, client, transport):
        transport.script("alpha", {"status": "completed", "data": {"products": [1]}})
        transport.script("beta", {"status": "failed", "error": {"code": "RATE_LIMITED", "message": "slow down"}})

        response = client.post("/tasks/get_products", json={"args": {"brief": "tea"}, "operation_id": "op-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["operation_id"] == "op-1"
        assert data["operation_name"] == "get_products"
        alpha, beta = data["outcomes"]
        assert alpha["success"] is True
        assert alpha["data"] == {"products": [1]}
        assert beta["success"] is False
        assert beta["error"]["code"] == "RATE_LIMITED"
        assert beta["error"]["recovery"] == "transient"

    def test_answers_resolve_clarifications(self, client, transport):
        transport.script(
            "alpha",
            {"status": "input-required", "context_id": "c-1", "message": "Budget?", "field": "budget"},
            {"status": "completed", "data": {"ok": True}},
        )

        response = client.post(
            "/tasks/create_media_buy",
            json={"args": {}, "agent_ids": ["alpha"], "answers": {"budget": 5000}}
        )

        outcome = response.json()["outcomes"][0]
        assert outcome["success"] is True
        assert outcome["clarification_rounds"] == 1
        assert transport.calls_for("alpha")[1]["args"] == {"budget": 5000}

    def test_callback_url_sent_to_agent(self, client, transport):
        start_deferred(client, transport)

        call = transport.calls_for("alpha")[0]
        assert call["callback_url"] == "https://me.test/webhooks/create_media_buy/alpha/op-api"

    def test_unknown_agent(self, client):
        response = client.post("/tasks/get_products", json={"agent_ids": ["nobody"]})

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "AGENT_NOT_FOUND"


class TestWebhooks:
    """Test inbound notifications"""

    def test_resume_via_path_endpoint(self, client, transport):
        data = start_deferred(client, transport)
        assert data["outcomes"][0]["pending"] is True

        payload = {"status": "completed", "task_id": "w-api", "result": {"buy_id": "b-1"}}
        response = client.post(
            "/webhooks/create_media_buy/alpha/op-api",
            json=payload,
            headers=signed_headers(payload)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["outcome"]["state"] == "completed"
        assert body["outcome"]["data"] == {"buy_id": "b-1"}

    def test_resume_via_query_endpoint(self, client, transport):
        start_deferred(client, transport)

        payload = {"status": "completed", "result": {}}
        response = client.post(
            "/webhooks",
            params={"agent_id": "alpha", "operation_id": "op-api", "task_type": "create_media_buy"},
            json=payload,
            headers=signed_headers(payload)
        )

        assert response.status_code == 200
        assert response.json()["outcome"]["operation_id"] == "op-api"

    def test_bad_signature(self, client, transport):
        start_deferred(client, transport)

        payload = {"status": "completed", "task_id": "w-api"}
        response = client.post(
            "/webhooks/create_media_buy/alpha/op-api",
            json=payload,
            headers=signed_headers(payload, secret="wrong")
        )

        assert response.status_code == 401

    def test_missing_signature(self, client):
        response = client.post("/webhooks", json={"status": "completed", "task_id": "w-api"})

        assert response.status_code == 401

    def test_unknown_operation(self, client):
        payload = {"status": "completed", "task_id": "w-nobody"}
        response = client.post("/webhooks", json=payload, headers=signed_headers(payload))

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "UNKNOWN_OPERATION"

    def test_invalid_body(self, client):
        response = client.post("/webhooks", content=b"not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400


class TestOperations:
    """Test pending-operation inspection and cleanup"""

    def test_get_pending_operation(self, client, transport):
        start_deferred(client, transport)

        response = client.get("/operations/op-api/alpha")

        assert response.status_code == 200
        record = response.json()
        assert record["work_id"] == "w-api"
        assert record["final_outcome"] is None

    def test_get_missing_operation(self, client):
        assert client.get("/operations/op-x/alpha").status_code == 404

    def test_cancel_then_close(self, client, transport):
        start_deferred(client, transport)

        response = client.post("/operations/op-api/alpha/cancel")
        assert response.status_code == 200

        record = client.get("/operations/op-api/alpha").json()
        assert record["state"] == "canceled"
        assert record["final_outcome"]["error"]["code"] == "TASK_CANCELED"

        assert client.delete("/operations/op-api/alpha").status_code == 200
        assert client.delete("/operations/op-api/alpha").status_code == 404
        assert client.post("/operations/op-api/alpha/cancel").status_code == 404
