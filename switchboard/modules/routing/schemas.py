from __future__ import annotations

from pydantic import Field

from switchboard.core.balancer.types import AUTO_ACCOUNT_ID, ProviderKind
from switchboard.core.utils.time import utcnow_iso
from switchboard.modules.shared.schemas import DashboardModel

ROUTING_CONFIG_VERSION = 2


class FlowEntry(DashboardModel):
    id: str
    provider: ProviderKind
    account_id: str = AUTO_ACCOUNT_ID
    model_id: str
    label: str = ""
    account_label: str | None = None


class RoutingFlow(DashboardModel):
    id: str
    name: str
    entries: list[FlowEntry] = Field(default_factory=list)


class RouteEntry(DashboardModel):
    id: str
    provider: ProviderKind
    account_id: str
    account_label: str | None = None


class AccountRoute(DashboardModel):
    id: str
    model_id: str
    entries: list[RouteEntry] = Field(default_factory=list)


class AccountRoutingConfig(DashboardModel):
    smart_switch: bool = False
    routes: list[AccountRoute] = Field(default_factory=list)


class RoutingConfig(DashboardModel):
    version: int = ROUTING_CONFIG_VERSION
    updated_at: str = Field(default_factory=utcnow_iso)
    flows: list[RoutingFlow] = Field(default_factory=list)
    account_routing: AccountRoutingConfig = Field(default_factory=AccountRoutingConfig)
    active_flow_id: str | None = None

    def find_flow(self, name_or_id: str) -> RoutingFlow | None:
        for flow in self.flows:
            if flow.name == name_or_id:
                return flow
        for flow in self.flows:
            if flow.id == name_or_id:
                return flow
        return None

    def active_flow(self) -> RoutingFlow | None:
        if not self.active_flow_id:
            return None
        return next((flow for flow in self.flows if flow.id == self.active_flow_id), None)

    def find_route(self, model_id: str) -> AccountRoute | None:
        return next((route for route in self.account_routing.routes if route.model_id == model_id), None)


# Admin API payloads. Drafts accept partially specified entries which the
# service fills in with generated ids and derived labels.


class FlowEntryDraft(DashboardModel):
    id: str | None = None
    provider: ProviderKind
    account_id: str = AUTO_ACCOUNT_ID
    model_id: str
    label: str | None = None
    account_label: str | None = None


class RoutingFlowDraft(DashboardModel):
    id: str | None = None
    name: str | None = None
    entries: list[FlowEntryDraft] = Field(default_factory=list)


class RouteEntryDraft(DashboardModel):
    id: str | None = None
    provider: ProviderKind
    account_id: str
    account_label: str | None = None


class AccountRouteDraft(DashboardModel):
    id: str | None = None
    model_id: str = ""
    entries: list[RouteEntryDraft] = Field(default_factory=list)


class AccountRoutingDraft(DashboardModel):
    smart_switch: bool | None = None
    routes: list[AccountRouteDraft] = Field(default_factory=list)


class RoutingConfigUpdateRequest(DashboardModel):
    flows: list[RoutingFlowDraft] | None = None
    # Single-flow shorthand: becomes a flow named "default".
    entries: list[FlowEntryDraft] | None = None
    account_routing: AccountRoutingDraft | None = None


class ActiveFlowRequest(DashboardModel):
    flow_id: str | None = None


class AccountSummary(DashboardModel):
    id: str
    provider: ProviderKind
    display_name: str
    email: str | None = None
    login: str | None = None
    label: str | None = None
    expires_at: int = 0
    disabled: bool = False
    rate_limited_until: int | None = None


class ModelOption(DashboardModel):
    id: str
    label: str


class RoutingConfigResponse(DashboardModel):
    config: RoutingConfig
    accounts: dict[str, list[AccountSummary]]
    models: dict[str, list[ModelOption]]


class RoutingConfigSaveResponse(DashboardModel):
    success: bool = True
    config: RoutingConfig


class RoutingCleanupResponse(DashboardModel):
    success: bool = True
    removed_count: int
    config: RoutingConfig
