from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Final

import aiohttp

from switchboard.core.balancer.types import ProviderKind
from switchboard.core.config.settings import get_settings
from switchboard.core.errors import UpstreamError
from switchboard.modules.accounts.schemas import ProviderAccount
from switchboard.modules.accounts.store import AccountStore
from switchboard.modules.proxy.providers import AccountCredential, ModelListingClient, ProviderRegistry
from switchboard.modules.routing.models import ModelCatalog

logger = logging.getLogger(__name__)

_SYNCED_PROVIDERS: Final[tuple[ProviderKind, ...]] = (ProviderKind.COPILOT, ProviderKind.CODEX)


class ModelSyncService:
    """Keeps the catalog's discovered model lists for secondary providers fresh.

    Each provider is synced at most once per TTL from the first account that
    returns a non-empty list. Callers wait a bounded time for an in-flight sync;
    a slow sync keeps running and lands on a later request. When no account
    can list models the static catalog is used.
    """

    def __init__(
        self,
        store: AccountStore,
        providers: ProviderRegistry,
        catalog: ModelCatalog,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._providers = providers
        self._catalog = catalog
        self._clock = clock or time.monotonic
        self._last_sync: dict[ProviderKind, float] = {}
        self._in_flight: dict[ProviderKind, asyncio.Task[bool]] = {}

    async def refresh(self) -> None:
        settings = get_settings()
        now = self._clock()
        waiters: list[asyncio.Task[bool]] = []
        for provider in _SYNCED_PROVIDERS:
            accounts = [account for account in self._store.list_accounts(provider) if not account.disabled]
            if not accounts:
                self._catalog.clear_dynamic_models(provider)
                self._last_sync.pop(provider, None)
                continue
            task = self._in_flight.get(provider)
            if task is None:
                last = self._last_sync.get(provider)
                if last is not None and now - last <= settings.model_sync_ttl_seconds:
                    continue
                self._last_sync[provider] = now
                task = asyncio.create_task(self._sync(provider, accounts))
                self._in_flight[provider] = task
            waiters.append(task)

        for task in waiters:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=settings.model_sync_timeout_seconds)
            except asyncio.TimeoutError:
                logger.debug("model_sync_wait_timeout timeout_s=%s", settings.model_sync_timeout_seconds)

    async def _sync(self, provider: ProviderKind, accounts: list[ProviderAccount]) -> bool:
        synced = False
        try:
            client = self._providers.find(provider)
            if not isinstance(client, ModelListingClient):
                return False
            for account in accounts:
                credential = AccountCredential(
                    provider=provider,
                    account_id=account.id,
                    access_token=account.access_token,
                    display=account.display_name(),
                    project_id=account.project_id,
                )
                try:
                    models = await client.list_models(credential)
                except (UpstreamError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    logger.debug(
                        "model_sync_skipped provider=%s account=%s error=%s",
                        provider.value,
                        account.display_name(),
                        exc,
                    )
                    continue
                if not models:
                    continue
                self._catalog.set_dynamic_models(provider, models)
                logger.debug(
                    "model_sync provider=%s account=%s count=%s",
                    provider.value,
                    account.display_name(),
                    len(models),
                )
                synced = True
                break
            return synced
        finally:
            if not synced:
                self._catalog.clear_dynamic_models(provider)
                logger.debug("model_sync_unavailable provider=%s action=static_fallback", provider.value)
            self._in_flight.pop(provider, None)
