from __future__ import annotations

import logging
import secrets
import string
from typing import Awaitable, Callable

from switchboard.core.clients.oauth import TokenRefreshResult, refresh_access_token
from switchboard.core.clients.quota import load_project_id
from switchboard.core.config.settings import get_settings
from switchboard.core.errors import QuotaFetchError, RefreshError, UpstreamError
from switchboard.core.metrics import get_metrics
from switchboard.core.utils.time import now_ms
from switchboard.modules.accounts.schemas import ProviderAccount
from switchboard.modules.accounts.store import AccountStore

TokenRefresher = Callable[[str], Awaitable[TokenRefreshResult]]
ProjectResolver = Callable[[str], Awaitable[str | None]]

_PLACEHOLDER_ADJECTIVES = ("useful", "bright", "swift", "calm", "bold")
_PLACEHOLDER_NOUNS = ("fuze", "wave", "spark", "flow", "core")
_BASE36 = string.digits + string.ascii_lowercase
_UNKNOWN_PROJECT = "unknown"

logger = logging.getLogger(__name__)


def generate_placeholder_project_id() -> str:
    adjective = secrets.choice(_PLACEHOLDER_ADJECTIVES)
    noun = secrets.choice(_PLACEHOLDER_NOUNS)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"{adjective}-{noun}-{suffix}"


class AuthManager:
    def __init__(
        self,
        store: AccountStore,
        *,
        refresher: TokenRefresher | None = None,
        project_resolver: ProjectResolver | None = None,
    ) -> None:
        self._store = store
        self._refresher = refresher or refresh_access_token
        self._project_resolver = project_resolver or load_project_id

    def needs_refresh(self, account: ProviderAccount, *, now: int | None = None) -> bool:
        if account.expires_at <= 0:
            return False
        current = now if now is not None else now_ms()
        skew_ms = int(get_settings().token_refresh_skew_seconds * 1000)
        return current > account.expires_at - skew_ms

    async def ensure_fresh(self, account: ProviderAccount, *, force: bool = False) -> ProviderAccount:
        if force or self.needs_refresh(account):
            return await self.refresh_account(account)
        return account

    async def refresh_account(self, account: ProviderAccount) -> ProviderAccount:
        try:
            result = await self._refresher(account.refresh_token)
        except RefreshError:
            get_metrics().observe_token_refresh(outcome="error")
            raise
        get_metrics().observe_token_refresh(outcome="ok")

        account.access_token = result.access_token
        account.expires_at = now_ms() + result.expires_in * 1000
        if result.refresh_token:
            account.refresh_token = result.refresh_token
        if not account.project_id:
            account.project_id = await self._resolve_project_id(account)
        await self._store.save_account(account)
        logger.info(
            "token_refresh account=%s provider=%s expires_at=%s",
            account.display_name(),
            account.provider.value,
            account.expires_at,
        )
        return account

    async def ensure_project_id(self, account: ProviderAccount) -> str:
        if account.project_id and account.project_id != _UNKNOWN_PROJECT:
            return account.project_id

        resolved = await self._resolve_project_id(account)
        if not resolved:
            resolved = generate_placeholder_project_id()
            logger.warning(
                "project_id_fallback account=%s placeholder=%s",
                account.display_name(),
                resolved,
            )
        account.project_id = resolved
        await self._store.save_account(account)
        return resolved

    async def _resolve_project_id(self, account: ProviderAccount) -> str | None:
        try:
            return await self._project_resolver(account.access_token)
        except (UpstreamError, QuotaFetchError) as exc:
            logger.warning("project_id_lookup_failed account=%s error=%s", account.display_name(), exc)
            return None
