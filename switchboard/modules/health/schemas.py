from __future__ import annotations

from switchboard.modules.shared.schemas import DashboardModel


class ProviderHealth(DashboardModel):
    accounts: int
    rate_limited: int
    in_flight: int


class HealthResponse(DashboardModel):
    status: str
    providers: dict[str, ProviderHealth]
