from __future__ import annotations

import pytest

from switchboard.core.balancer.types import ProviderKind
from switchboard.modules.accounts.schemas import ProviderAccount

pytestmark = pytest.mark.integration


async def _seed_accounts(app_instance) -> None:
    store = app_instance.state.services.store
    await store.save_account(
        ProviderAccount(id="p1", provider=ProviderKind.ANTIGRAVITY, email="p1@example.com", project_id="proj")
    )
    await store.save_account(ProviderAccount(id="c1", provider=ProviderKind.CODEX, login="codex-user"))


@pytest.mark.asyncio
async def test_get_routing_config_defaults(async_client):
    response = await async_client.get("/api/routing/config")
    assert response.status_code == 200
    payload = response.json()
    assert payload["config"]["flows"] == []
    assert payload["config"]["accountRouting"] == {"smartSwitch": False, "routes": []}
    assert payload["config"]["activeFlowId"] is None
    assert set(payload["accounts"]) == {"antigravity", "codex", "copilot"}
    assert any(model["id"] == "gpt-5" for model in payload["models"]["codex"])


@pytest.mark.asyncio
async def test_save_and_activate_flow(async_client, app_instance):
    await _seed_accounts(app_instance)

    response = await async_client.post(
        "/api/routing/config",
        json={
            "flows": [
                {
                    "name": "chain",
                    "entries": [
                        {"provider": "codex", "accountId": "c1", "modelId": "gpt-5"},
                        {"provider": "antigravity", "modelId": "claude-sonnet-4-5"},
                    ],
                }
            ],
            "accountRouting": {
                "smartSwitch": True,
                "routes": [{"modelId": "gpt-5", "entries": [{"provider": "codex", "accountId": "c1"}]}],
            },
        },
    )
    assert response.status_code == 200
    saved = response.json()
    assert saved["success"] is True
    flow = saved["config"]["flows"][0]
    assert flow["name"] == "chain"
    assert flow["entries"][0]["accountLabel"] == "codex-user"
    assert flow["entries"][1]["accountId"] == "auto"
    assert saved["config"]["accountRouting"]["smartSwitch"] is True

    response = await async_client.post("/api/routing/active-flow", json={"flowId": flow["id"]})
    assert response.status_code == 200
    assert response.json()["config"]["activeFlowId"] == flow["id"]

    response = await async_client.get("/api/routing/config")
    payload = response.json()
    assert payload["config"]["activeFlowId"] == flow["id"]
    assert [account["id"] for account in payload["accounts"]["codex"]] == ["c1"]


@pytest.mark.asyncio
async def test_unknown_active_flow_is_rejected(async_client):
    response = await async_client.post("/api/routing/active-flow", json={"flowId": "missing"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "unknown_flow"


@pytest.mark.asyncio
async def test_invalid_payload_uses_dashboard_envelope(async_client):
    response = await async_client.post(
        "/api/routing/config",
        json={"flows": [{"entries": [{"provider": "nope", "modelId": "x"}]}]},
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_cleanup_removes_stale_entries(async_client, app_instance):
    await _seed_accounts(app_instance)
    await async_client.post(
        "/api/routing/config",
        json={
            "entries": [
                {"provider": "codex", "accountId": "c1", "modelId": "gpt-5"},
                {"provider": "codex", "accountId": "ghost", "modelId": "gpt-5"},
            ]
        },
    )

    response = await async_client.post("/api/routing/cleanup")

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["removedCount"] == 1
    assert [entry["accountId"] for entry in payload["config"]["flows"][0]["entries"]] == ["c1"]


@pytest.mark.asyncio
async def test_health_reports_pool_state(async_client, app_instance):
    await _seed_accounts(app_instance)
    app_instance.state.services.store.mark_rate_limited(ProviderKind.CODEX, "c1", 60_000)

    response = await async_client.get("/health", headers={"x-request-id": "req-123"})

    assert response.status_code == 200
    assert response.headers["x-request-id"] == "req-123"
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["providers"]["codex"] == {"accounts": 1, "rateLimited": 1, "inFlight": 0}
    assert payload["providers"]["antigravity"]["accounts"] == 1


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_prometheus_text(async_client):
    response = await async_client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "switchboard_route_requests_total" in response.text
