"""
Tests for the execution and history API endpoints.
"""

import sys
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from canvasflow.db.run_ledger import InMemoryRunLedger, get_run_ledger
from canvasflow.llm import gemini
from canvasflow.main import app


@pytest.fixture
def ledger():
    ledger = InMemoryRunLedger()
    app.dependency_overrides[get_run_ledger] = lambda: ledger
    yield ledger
    app.dependency_overrides.pop(get_run_ledger, None)


@pytest.fixture
def client(ledger):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def fake_generate(monkeypatch):
    async def echo(prompt, system=None, images=None, temperature=0.7):
        if prompt == "fail":
            raise RuntimeError("all models failed")
        return f"echo: {prompt}"

    monkeypatch.setattr(gemini, "generate", echo)


def wait_for_terminal(client: TestClient, run_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f"/api/v1/history/runs/{run_id}")
        assert response.status_code == 200
        body = response.json()
        if body["run"]["status"] != "RUNNING" or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


TEXT_TO_LLM = {
    "workflow_id": "wf-api",
    "nodes": [
        {"id": "t1", "type": "text", "position": {"x": 0, "y": 0}, "data": {"text": "Hello"}},
        {"id": "l1", "type": "llm", "data": {}},
    ],
    "edges": [
        {
            "id": "e1",
            "source": "t1",
            "target": "l1",
            "sourceHandle": "text-output",
            "targetHandle": "user_message-input",
        }
    ],
}


class TestExecutionEndpoints:

    def test_full_run_completes_and_is_listed(self, client, fake_generate):
        response = client.post("/api/v1/execution/runs", json=TEXT_TO_LLM)

        assert response.status_code == 202
        run_id = response.json()["run_id"]

        details = wait_for_terminal(client, run_id)
        assert details["run"]["status"] == "COMPLETED"
        assert details["run"]["scope"] == "FULL"
        assert [nr["node_id"] for nr in details["node_runs"]] == ["t1", "l1"]
        assert details["node_runs"][1]["outputs"] == {"text": "echo: Hello"}

        listing = client.get("/api/v1/history/workflows/wf-api/runs")
        assert listing.status_code == 200
        assert [r["id"] for r in listing.json()] == [run_id]

    def test_invalid_graph_is_rejected(self, client):
        payload = {
            "workflow_id": "wf-api",
            "nodes": [{"id": "x", "type": "teleport"}],
            "edges": [],
        }

        response = client.post("/api/v1/execution/runs", json=payload)

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["message"] == "Invalid workflow graph"
        assert detail["diagnostics"][0]["node_id"] == "x"

    def test_failed_run_is_reported(self, client):
        payload = {
            "workflow_id": "wf-api",
            "nodes": [{"id": "c1", "type": "crop-image", "data": {}}],
            "edges": [],
        }

        run_id = client.post("/api/v1/execution/runs", json=payload).json()["run_id"]

        details = wait_for_terminal(client, run_id)
        assert details["run"]["status"] == "FAILED"
        assert details["node_runs"][0]["error"] == "No image input provided. Connect an image source."

    def test_run_single_node(self, client, fake_generate, ledger):
        response = client.post(
            "/api/v1/execution/nodes/run",
            json={"node_id": "l1", "workflow_id": "wf-api", "user_message": "Hi there"},
        )

        assert response.status_code == 200
        assert response.json() == {"output": "echo: Hi there"}
        runs = client.get("/api/v1/history/workflows/wf-api/runs").json()
        assert runs[0]["scope"] == "SINGLE"
        assert runs[0]["status"] == "COMPLETED"

    def test_run_single_node_empty_prompt(self, client, fake_generate):
        response = client.post(
            "/api/v1/execution/nodes/run",
            json={"node_id": "l1", "workflow_id": "wf-api", "user_message": "   "},
        )

        assert response.status_code == 400

    def test_run_single_node_generation_failure(self, client, fake_generate):
        response = client.post(
            "/api/v1/execution/nodes/run",
            json={"node_id": "l1", "workflow_id": "wf-api", "user_message": "fail"},
        )

        assert response.status_code == 502
        assert "all models failed" in response.json()["detail"]

    def test_run_single_node_requires_workflow_id(self, client, fake_generate, ledger):
        response = client.post(
            "/api/v1/execution/nodes/run",
            json={"node_id": "l1", "user_message": "Hi there"},
        )

        assert response.status_code == 422
        assert client.get("/api/v1/history/workflows/l1/runs").json() == []

    def test_missing_api_key_is_not_a_client_error(self, client, monkeypatch):
        monkeypatch.setattr(gemini, "_client", None)
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.delenv("GOOGLE_GEMINI_API_KEY", raising=False)

        response = client.post(
            "/api/v1/execution/nodes/run",
            json={"node_id": "l1", "workflow_id": "wf-api", "user_message": "Hi there"},
        )

        assert response.status_code == 502
        assert "GEMINI_API_KEY is not configured" in response.json()["detail"]

    def test_cancel_unknown_run(self, client):
        response = client.post("/api/v1/execution/runs/does-not-exist/cancel")

        assert response.status_code == 404

    def test_cancel_finished_run_returns_it_unchanged(self, client, fake_generate):
        run_id = client.post("/api/v1/execution/runs", json=TEXT_TO_LLM).json()["run_id"]
        wait_for_terminal(client, run_id)

        response = client.post(f"/api/v1/execution/runs/{run_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "COMPLETED"


class TestHistoryEndpoints:

    def test_unknown_run_is_404(self, client):
        response = client.get("/api/v1/history/runs/nope")

        assert response.status_code == 404

    def test_limit_is_validated(self, client):
        response = client.get("/api/v1/history/workflows/wf-api/runs?limit=0")

        assert response.status_code == 422

    def test_empty_history(self, client):
        response = client.get("/api/v1/history/workflows/unknown/runs")

        assert response.status_code == 200
        assert response.json() == []
