from __future__ import annotations

import httpx
import pytest

from agent_engine.llm.anthropic_client import AnthropicLLMClient

TENANT = {"X-Tenant-Id": "tenant-1"}


def _create(client, **overrides):
    body = {"name": "Ledger helper", "type": "accounting", "provider": "stub", "model": "stub-model"}
    body.update(overrides)
    return client.post("/agents", json=body, headers=TENANT)


def test_create_agent_defaults(client):
    response = _create(client)

    assert response.status_code == 201
    agent = response.json()
    assert agent["status"] == "configured"
    assert agent["type"] == "accounting"
    assert agent["config"]["briefing_required"] is True
    assert agent["config"]["retry_policy"] == {"max_retries": 0, "backoff_ms": 1000, "max_backoff_ms": 30000}


def test_create_agent_requires_provider_and_model(client):
    response = client.post("/agents", json={"name": "Nameless"}, headers=TENANT)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_BODY"


@pytest.mark.parametrize(
    "config",
    [
        {"timeout_seconds": -5},
        {"timeout_seconds": 0},
        {"budget_limit": -1.0},
        {"max_tokens": 0},
        {"temperature": -0.1},
        {"temperature": 2.5},
    ],
)
def test_create_agent_rejects_out_of_range_config(client, config):
    response = _create(client, config=config)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_BODY"
    assert client.get("/agents", headers=TENANT).json() == []


def test_list_and_get_are_tenant_scoped(client):
    agent_id = _create(client).json()["id"]

    assert [a["id"] for a in client.get("/agents", headers=TENANT).json()] == [agent_id]
    assert client.get("/agents", headers={"X-Tenant-Id": "tenant-2"}).json() == []
    assert client.get(f"/agents/{agent_id}", headers={"X-Tenant-Id": "tenant-2"}).status_code == 404


def test_launch_then_briefing_completes(client, poll):
    agent_id = _create(client, config={"briefing_depth": "full"}).json()["id"]

    assert client.post(f"/agents/{agent_id}/launch", headers=TENANT).json() == {"status": "briefing"}

    agent = poll(
        lambda: client.get(f"/agents/{agent_id}", headers=TENANT).json(),
        lambda a: a["status"] == "ready",
    )
    assert "## Guidelines" in agent["briefing"]["enhanced_prompt"]
    assert agent["briefing"]["estimated_tokens"] > 0


def test_invalid_lifecycle_transition_is_rejected(client):
    agent_id = _create(client).json()["id"]

    response = client.post(f"/agents/{agent_id}/pause", headers=TENANT)

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "INVALID_TRANSITION"
    assert error["details"] == {"source": "configured", "target": "paused"}
    assert client.get(f"/agents/{agent_id}", headers=TENANT).json()["status"] == "configured"


def test_unknown_lifecycle_action_is_rejected(client):
    agent_id = _create(client).json()["id"]
    response = client.post(f"/agents/{agent_id}/explode", headers=TENANT)
    assert response.status_code == 400


def test_pause_terminate_and_relaunch(client, poll):
    agent_id = _create(client).json()["id"]
    client.post(f"/agents/{agent_id}/launch", headers=TENANT)
    poll(
        lambda: client.get(f"/agents/{agent_id}", headers=TENANT).json(),
        lambda a: a["status"] == "ready",
    )

    assert client.post(f"/agents/{agent_id}/pause", headers=TENANT).json() == {"status": "paused"}
    assert client.post(f"/agents/{agent_id}/terminate", headers=TENANT).json() == {"status": "terminated"}
    assert client.post(f"/agents/{agent_id}/terminate", headers=TENANT).json() == {"status": "terminated"}
    assert client.post(f"/agents/{agent_id}/launch", headers=TENANT).json() == {"status": "briefing"}


def test_delete_agent(client):
    agent_id = _create(client).json()["id"]

    response = client.delete(f"/agents/{agent_id}", headers=TENANT)

    assert response.status_code == 204
    assert client.get(f"/agents/{agent_id}", headers=TENANT).status_code == 404


def test_runs_of_unknown_agent_are_not_found(client):
    assert client.get("/agents/missing/runs", headers=TENANT).status_code == 404
    assert client.get("/agents/missing/costs", headers=TENANT).status_code == 404


def test_providers_and_models(client):
    assert client.get("/providers").json() == {"providers": ["stub"]}

    models = client.get("/providers/models").json()
    assert models == [
        {
            "id": "stub-model",
            "name": "Stub Model",
            "description": "",
            "context_window": 8000,
            "max_output": 2000,
            "input_price": 0.005,
            "output_price": 0.015,
            "capabilities": ["text"],
        }
    ]


def test_validate_key_for_unknown_provider(client):
    response = client.post("/providers/nope/validate", json={"api_key": "k"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PROVIDER_NOT_FOUND"


def test_validate_key_closes_the_throwaway_client(client, container, stub_factory, monkeypatch):
    throwaway = stub_factory(name="openai")
    monkeypatch.setattr(container.registry, "create_provider_with_key", lambda *args: throwaway)

    response = client.post("/providers/openai/validate", json={"api_key": "sk-test"})

    assert response.json() == {"provider": "openai", "valid": True}
    assert throwaway.closed is True


def _anthropic_answering(status: int):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"type": "error", "error": {"type": "authentication_error"}})

    def factory(provider, credential, endpoint=None):
        return AnthropicLLMClient(api_key=credential, transport=httpx.MockTransport(handler))

    return factory


@pytest.mark.parametrize("status", [401, 403])
def test_validate_key_reports_a_rejected_credential(client, container, monkeypatch, status):
    monkeypatch.setattr(container.registry, "create_provider_with_key", _anthropic_answering(status))

    response = client.post("/providers/anthropic/validate", json={"api_key": "sk-ant-revoked"})

    assert response.status_code == 200
    assert response.json() == {"provider": "anthropic", "valid": False}


def test_validate_key_keeps_backend_outages_as_gateway_errors(client, container, monkeypatch):
    monkeypatch.setattr(container.registry, "create_provider_with_key", _anthropic_answering(500))

    response = client.post("/providers/anthropic/validate", json={"api_key": "sk-ant-live"})

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "PROVIDER_ERROR"


def test_health_reports_memory_storage(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "storage": "memory", "dependencies": {}, "providers": ["stub"]}


def test_metrics_endpoint_exposes_request_counters(client):
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "api_http_requests_total" in response.text
