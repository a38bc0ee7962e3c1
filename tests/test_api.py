from __future__ import annotations

import time
from typing import Any

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from paygent.app.history import InMemoryHistoryLog
from paygent.app.payment import DemoPaymentProvider, HttpPaymentProvider
from paygent.app.settings import Settings
from paygent.main import create_app

TERMINAL_EVENTS = {"pipeline:completed", "pipeline:failed"}


def _wait_for_terminal(client: TestClient, pipeline_id: str, timeout_s: float = 5.0) -> dict[str, Any]:
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        payload = client.get(f"/api/pipeline/{pipeline_id}").json()
        if payload["status"] in {"complete", "failed"}:
            return payload
        time.sleep(0.02)
    raise TimeoutError(f"Pipeline {pipeline_id} did not finish within {timeout_s:.1f}s")


def test_health_endpoints(client: TestClient) -> None:
    for route in ("/health", "/healthz", "/live"):
        response = client.get(route)
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


def test_home_page_serves_html(client: TestClient) -> None:
    response = client.get("/")
    assert response.status_code == 200
    assert "text/html" in response.headers["content-type"]
    assert "pipeline console" in response.text
    assert "/api/pipeline/execute" in response.text


def test_services_listing_and_search(client: TestClient) -> None:
    services = client.get("/api/services").json()
    assert len(services) == 11
    assert services[0]["price"] == {"amount": 1000, "asset": "STX"}

    matches = client.get("/api/services", params={"q": "price"}).json()
    assert {s["id"] for s in matches} == {"demo-btc-price", "demo-stx-price"}


def test_execute_then_poll_until_complete(client: TestClient) -> None:
    response = client.post("/api/pipeline/execute", json={"query": "Summarize today's news and tweet it"})
    assert response.status_code == 200
    pipeline_id = response.json()["pipeline_id"]
    assert pipeline_id.startswith("pipeline-")

    status = _wait_for_terminal(client, pipeline_id)

    assert status["status"] == "complete"
    assert status["total_cost"] == 4000
    assert [step["service_id"] for step in status["steps"]] == [
        "demo-bitcoin-news",
        "demo-summarize",
        "demo-tweet-generator",
    ]
    assert status["final_output"]["contentType"] == "tweet"

    spending = client.get("/api/spending").json()
    assert spending["today"]["total"] == 4000
    assert spending["today"]["transactions"] == 3
    assert spending["limits"]["remaining_today"] == 1_000_000 - 4000

    history = client.get("/api/history").json()
    assert history[0]["id"] == pipeline_id
    assert history[0]["status"] == "success"
    assert len(history[0]["tx_hashes"]) == 3


def test_budget_too_small_fails_the_run(client: TestClient) -> None:
    response = client.post("/api/pipeline/execute", json={"query": "Get Bitcoin price", "budget": 10})
    status = _wait_for_terminal(client, response.json()["pipeline_id"])

    assert status["status"] == "failed"
    assert status["error"] == "Could not create execution plan for this task"


def test_unknown_pipeline_returns_404(client: TestClient) -> None:
    response = client.get("/api/pipeline/pipeline-missing")
    assert response.status_code == 404
    assert response.json() == {"detail": "Pipeline not found"}


def test_empty_query_is_rejected(client: TestClient) -> None:
    assert client.post("/api/pipeline/execute", json={"query": ""}).status_code == 422
    assert client.post("/api/pipeline/preview", json={}).status_code == 422
    assert client.post("/api/pipeline/execute", json={"query": "x", "max_steps": 0}).status_code == 422


def test_preview_lists_priced_steps(client: TestClient) -> None:
    response = client.post("/api/pipeline/preview", json={"query": "Summarize today's news and tweet it"})
    assert response.status_code == 200
    payload = response.json()

    assert payload["can_afford"] is True
    assert payload["estimated_total_cost"] == 4000
    assert [step["service_name"] for step in payload["steps"]] == [
        "Bitcoin News API",
        "AI Summarizer",
        "Tweet Generator",
    ]
    assert client.get("/api/spending").json()["today"]["total"] == 0


def test_preview_without_plan(client: TestClient) -> None:
    payload = client.post("/api/pipeline/preview", json={"query": "Get Bitcoin price", "budget": 1}).json()

    assert payload["steps"] == []
    assert payload["can_afford"] is False
    assert payload["reason"] == "Could not create execution plan for this task"


def test_limits_update(client: TestClient) -> None:
    response = client.put("/api/limits", json={"max_per_task": 2500, "max_per_day": 9000})
    assert response.status_code == 200
    assert response.json() == {"per_task": 2500, "per_day": 9000, "remaining_today": 9000}

    assert client.put("/api/limits", json={"max_per_task": -1}).status_code == 422

    preview = client.post("/api/pipeline/preview", json={"query": "Summarize today's news and tweet it"}).json()
    assert preview["estimated_total_cost"] <= 2500


def test_history_limit_is_validated(client: TestClient) -> None:
    assert client.get("/api/history", params={"limit": 0}).status_code == 422
    assert client.get("/api/history", params={"limit": 5}).json() == []


def test_websocket_streams_pipeline_lifecycle(client: TestClient) -> None:
    with client.websocket_connect("/ws") as websocket:
        greeting = websocket.receive_json()
        assert greeting["event"] == "connected"

        pipeline_id = client.post("/api/pipeline/execute", json={"query": "Get Bitcoin price"}).json()["pipeline_id"]

        names: list[str] = []
        while True:
            message = websocket.receive_json()
            if message["pipeline_id"] != pipeline_id:
                continue
            names.append(message["event"])
            if message["event"] in TERMINAL_EVENTS:
                break

    assert names == [
        "pipeline:started",
        "pipeline:planning",
        "pipeline:planning",
        "pipeline:planned",
        "pipeline:step:started",
        "pipeline:step:completed",
        "pipeline:completed",
    ]


def test_create_app_builds_collaborators_from_settings(
    offline_settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    app = create_app(settings_override=offline_settings)
    assert isinstance(app.state.history, InMemoryHistoryLog)
    assert isinstance(app.state.orchestrator.executor.payment_provider, DemoPaymentProvider)

    class FakePostgresHistory(InMemoryHistoryLog):
        def __init__(self, database_url: str, *, capacity: int) -> None:
            super().__init__(capacity=capacity)
            self.database_url = database_url

    from paygent import main as main_module

    monkeypatch.setattr(main_module, "PostgresHistoryLog", FakePostgresHistory)
    configured = offline_settings.model_copy(
        update={"database_url": "postgresql://paygent@localhost/paygent", "payment_mode": "http"}
    )
    app = create_app(settings_override=configured)
    assert isinstance(app.state.history, FakePostgresHistory)
    assert app.state.history.database_url == "postgresql://paygent@localhost/paygent"
    assert isinstance(app.state.orchestrator.executor.payment_provider, HttpPaymentProvider)


def test_create_app_rejects_unknown_payment_mode(offline_settings: Settings) -> None:
    with pytest.raises(RuntimeError, match="Unknown payment mode"):
        create_app(settings_override=offline_settings.model_copy(update={"payment_mode": "carrier-pigeon"}))


def test_websocket_closes_when_an_event_cannot_be_sent(client: TestClient) -> None:
    broadcaster = client.app.state.broadcaster

    with client.websocket_connect("/ws") as websocket:
        assert websocket.receive_json()["event"] == "connected"
        broadcaster.publish("pipeline:debug", "pipeline-unsendable", {"handle": object()})

        with pytest.raises(WebSocketDisconnect) as closed:
            websocket.receive_json()
        assert closed.value.code == 1011

    deadline = time.time() + 5.0
    while broadcaster.subscriber_count and time.time() < deadline:
        time.sleep(0.01)
    assert broadcaster.subscriber_count == 0
