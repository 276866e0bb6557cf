from __future__ import annotations

from fastapi import APIRouter, Depends

from switchboard.core.balancer.types import ProviderKind
from switchboard.core.utils.time import now_ms
from switchboard.dependencies import HealthContext, get_health_context
from switchboard.modules.health.schemas import HealthResponse, ProviderHealth

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    context: HealthContext = Depends(get_health_context),
) -> HealthResponse:
    now = now_ms()
    providers: dict[str, ProviderHealth] = {}
    for kind in ProviderKind:
        accounts = context.store.list_accounts(kind)
        providers[kind.value] = ProviderHealth(
            accounts=len(accounts),
            rate_limited=sum(1 for account in accounts if context.store.is_rate_limited(kind, account.id, now=now)),
            in_flight=sum(1 for account in accounts if context.selector.is_in_flight(kind, account.id)),
        )
    return HealthResponse(status="ok", providers=providers)
