from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from switchboard.core.balancer.types import AUTO_ACCOUNT_ID, PRIMARY_PROVIDER, ProviderKind
from switchboard.modules.accounts.store import AccountStore
from switchboard.modules.proxy.account_selector import AccountSelector
from switchboard.modules.proxy.sticky import FlowCursorStore
from switchboard.modules.routing.model_sync import ModelSyncService
from switchboard.modules.routing.models import ModelCatalog
from switchboard.modules.routing.repository import RoutingConfigRepository
from switchboard.modules.routing.schemas import (
    AccountRoute,
    AccountRoutingConfig,
    AccountSummary,
    FlowEntry,
    ModelOption,
    RouteEntry,
    RoutingConfig,
    RoutingConfigUpdateRequest,
    RoutingFlow,
    RoutingFlowDraft,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RoutingCleanupResult:
    removed_count: int
    config: RoutingConfig


class RoutingService:
    def __init__(
        self,
        repository: RoutingConfigRepository,
        store: AccountStore,
        selector: AccountSelector,
        catalog: ModelCatalog,
        *,
        model_sync: ModelSyncService | None = None,
        cursors: FlowCursorStore | None = None,
    ) -> None:
        self._repository = repository
        self._store = store
        self._selector = selector
        self._catalog = catalog
        self._model_sync = model_sync
        self._cursors = cursors

    def get_config(self) -> RoutingConfig:
        config = self._repository.load().model_copy(deep=True)
        for flow in config.flows:
            for entry in flow.entries:
                entry.account_label = self.resolve_account_label(entry.provider, entry.account_id, entry.account_label)
        for route in config.account_routing.routes:
            for route_entry in route.entries:
                route_entry.account_label = self.resolve_account_label(
                    route_entry.provider,
                    route_entry.account_id,
                    route_entry.account_label,
                )
        return config

    def list_accounts(self) -> dict[str, list[AccountSummary]]:
        summaries: dict[str, list[AccountSummary]] = {}
        for kind in ProviderKind:
            summaries[kind.value] = [
                AccountSummary(
                    id=account.id,
                    provider=account.provider,
                    display_name=account.label or account.email or account.login or account.id,
                    email=account.email,
                    login=account.login,
                    label=account.label,
                    expires_at=account.expires_at,
                    disabled=account.disabled,
                    rate_limited_until=self._selector.get_rate_limited_until(kind, account.id),
                )
                for account in self._store.list_accounts(kind)
            ]
        return summaries

    async def refresh_models(self) -> None:
        if self._model_sync is not None:
            await self._model_sync.refresh()

    def list_models(self) -> dict[str, list[ModelOption]]:
        return self._catalog.all_models()

    def resolve_account_label(self, provider: ProviderKind, account_id: str, fallback: str | None = None) -> str:
        if account_id == AUTO_ACCOUNT_ID:
            return AUTO_ACCOUNT_ID
        account = self._store.get_account(provider, account_id)
        if account is not None:
            return account.label or account.email or account.login or fallback or account_id
        return fallback or account_id

    async def save_config(self, request: RoutingConfigUpdateRequest) -> RoutingConfig:
        current = self._repository.load()
        if request.flows is not None:
            drafts = request.flows
        elif request.entries is not None:
            drafts = [RoutingFlowDraft(name="default", entries=request.entries)]
        else:
            drafts = None

        if drafts is not None:
            flows = [self._normalize_flow(draft, index) for index, draft in enumerate(drafts)]
        else:
            flows = [flow.model_copy(deep=True) for flow in current.flows]

        if request.account_routing is not None:
            account_routing = AccountRoutingConfig(
                smart_switch=bool(request.account_routing.smart_switch),
                routes=[
                    AccountRoute(
                        id=route.id or str(uuid4()),
                        model_id=route.model_id.strip(),
                        entries=[
                            RouteEntry(
                                id=entry.id or str(uuid4()),
                                provider=entry.provider,
                                account_id=entry.account_id,
                                account_label=self.resolve_account_label(
                                    entry.provider,
                                    entry.account_id,
                                    entry.account_label,
                                ),
                            )
                            for entry in route.entries
                        ],
                    )
                    for route in request.account_routing.routes
                ],
            )
        else:
            account_routing = current.account_routing.model_copy(deep=True)

        active_flow_id = current.active_flow_id
        if active_flow_id and not any(flow.id == active_flow_id for flow in flows):
            active_flow_id = None

        config = RoutingConfig(flows=flows, account_routing=account_routing, active_flow_id=active_flow_id)
        saved = await self._repository.save(config)
        if self._cursors is not None:
            kept_ids = {flow.id for flow in saved.flows}
            for flow in current.flows:
                if flow.id not in kept_ids:
                    await self._cursors.forget(flow.id)
        logger.info(
            "routing_config_saved flows=%s routes=%s smart_switch=%s",
            len(saved.flows),
            len(saved.account_routing.routes),
            saved.account_routing.smart_switch,
        )
        return saved

    def _normalize_flow(self, draft: RoutingFlowDraft, index: int) -> RoutingFlow:
        default_name = f"Flow {index + 1}"
        name = (draft.name or default_name).strip() or default_name
        return RoutingFlow(
            id=draft.id or str(uuid4()),
            name=name,
            entries=[
                FlowEntry(
                    id=entry.id or str(uuid4()),
                    provider=entry.provider,
                    account_id=entry.account_id,
                    model_id=entry.model_id,
                    label=entry.label or f"{entry.provider.value}:{entry.model_id}",
                    account_label=self.resolve_account_label(entry.provider, entry.account_id, entry.account_label),
                )
                for entry in draft.entries
            ],
        )

    async def set_active_flow(self, flow_id: str | None) -> RoutingConfig:
        config = self._repository.load().model_copy(deep=True)
        if flow_id is not None and not any(flow.id == flow_id for flow in config.flows):
            raise ValueError(f"Unknown flow id: {flow_id}")
        config.active_flow_id = flow_id
        saved = await self._repository.save(config)
        logger.info("routing_active_flow flow_id=%s", flow_id)
        return saved

    def count_stale_entries(self) -> int:
        config = self._repository.load()
        references = [(entry.provider, entry.account_id) for flow in config.flows for entry in flow.entries]
        references.extend(
            (entry.provider, entry.account_id) for route in config.account_routing.routes for entry in route.entries
        )
        return sum(1 for provider, account_id in references if not self._is_valid_reference(provider, account_id))

    async def cleanup_stale(self) -> RoutingCleanupResult:
        """Drop entries whose account no longer exists, then clear every rate limit."""
        config = self._repository.load().model_copy(deep=True)
        removed = 0

        for flow in config.flows:
            kept_entries = [
                entry for entry in flow.entries if self._is_valid_reference(entry.provider, entry.account_id)
            ]
            removed += len(flow.entries) - len(kept_entries)
            flow.entries = kept_entries

        for route in config.account_routing.routes:
            kept_route_entries = [
                entry for entry in route.entries if self._is_valid_reference(entry.provider, entry.account_id)
            ]
            removed += len(route.entries) - len(kept_route_entries)
            route.entries = kept_route_entries

        saved = await self._repository.save(config)
        cleared = self._selector.clear_all_rate_limits()
        if self._cursors is not None:
            await self._cursors.clear()
        logger.info("routing_cleanup removed=%s rate_limits_cleared=%s", removed, cleared)
        return RoutingCleanupResult(removed_count=removed, config=saved)

    def _is_valid_reference(self, provider: ProviderKind, account_id: str) -> bool:
        if account_id == AUTO_ACCOUNT_ID:
            return provider == PRIMARY_PROVIDER
        return self._store.has_account(provider, account_id)
