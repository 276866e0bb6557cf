from __future__ import annotations

import json

import pytest
from fastapi import Request
from httpx import ASGITransport, AsyncClient

from switchboard.core.balancer.types import ProviderKind
from switchboard.core.errors import UpstreamError
from switchboard.main import create_app
from switchboard.modules.accounts.schemas import ProviderAccount
from switchboard.modules.proxy.providers import (
    ChatMessage,
    CompletionRequest,
    CompletionResult,
    ProviderRegistry,
)
from switchboard.modules.routing.schemas import FlowEntryDraft, RoutingConfigUpdateRequest, RoutingFlowDraft

pytestmark = pytest.mark.integration

_QUOTA_BODY = json.dumps({"error": {"message": "exhausted", "details": [{"reason": "QUOTA_EXHAUSTED"}]}})


class _QuotaExhaustedClient:
    async def complete(self, credential, model_id, messages, tools=None) -> CompletionResult:
        raise UpstreamError("codex", 429, _QUOTA_BODY)

    async def stream(self, credential, model_id, messages, tools=None):
        raise UpstreamError("codex", 429, _QUOTA_BODY)
        yield


def _app_with_completion_route():
    app = create_app(providers=ProviderRegistry({ProviderKind.CODEX: _QuotaExhaustedClient()}))

    @app.post("/v1/complete")
    async def complete(request: Request, payload: dict) -> dict:
        routed = await request.app.state.services.router.route_completion(
            CompletionRequest(model=payload["model"], messages=[ChatMessage(role="user", content="hi")])
        )
        return {"account": routed.account_id}

    return app


@pytest.mark.asyncio
async def test_routing_errors_use_openai_envelope_on_mounted_route():
    app = _app_with_completion_route()
    async with app.router.lifespan_context(app):
        services = app.state.services
        await services.store.save_account(ProviderAccount(id="c1", provider=ProviderKind.CODEX, login="codex-user"))
        await services.routing.save_config(
            RoutingConfigUpdateRequest(
                flows=[
                    RoutingFlowDraft(
                        name="chain",
                        entries=[FlowEntryDraft(provider=ProviderKind.CODEX, account_id="c1", model_id="gpt-5")],
                    )
                ]
            )
        )
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            exhausted = await client.post("/v1/complete", json={"model": "chain"})
            unknown = await client.post("/v1/complete", json={"model": "route:missing"})

    assert exhausted.status_code == 429
    assert exhausted.json()["error"]["type"] == "rate_limit_error"
    assert exhausted.json()["error"]["reason"] == "quota_exhausted"
    assert exhausted.json()["error"]["resets_in_seconds"] > 0
    assert unknown.status_code == 400
    assert unknown.json()["error"]["reason"] == "unknown_flow"
