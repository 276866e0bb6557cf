from __future__ import annotations

import logging

from switchboard.core.balancer.types import ProviderKind, RateLimitDecision
from switchboard.core.metrics import get_metrics
from switchboard.core.utils.request_id import get_request_id
from switchboard.modules.accounts.store import AccountStore
from switchboard.modules.proxy.account_manager import AccountManager, ReleaseFn

logger = logging.getLogger(__name__)


def _noop_release() -> None:
    return None


class AccountSelector:
    """Single entry point for rate-limit state across every provider kind.

    The primary provider is backed by :class:`AccountManager`; the secondary
    providers keep their state directly on the account store records.
    """

    def __init__(self, store: AccountStore, manager: AccountManager) -> None:
        self._store = store
        self._manager = manager

    def is_rate_limited(self, provider: ProviderKind, account_id: str) -> bool:
        match provider:
            case ProviderKind.ANTIGRAVITY:
                return self._manager.is_account_rate_limited(account_id)
            case ProviderKind.CODEX | ProviderKind.COPILOT:
                return self._store.is_rate_limited(provider, account_id)

    def is_in_flight(self, provider: ProviderKind, account_id: str) -> bool:
        match provider:
            case ProviderKind.ANTIGRAVITY:
                return self._manager.is_account_in_flight(account_id)
            case _:
                return False

    def mark_rate_limited(self, provider: ProviderKind, account_id: str, duration_ms: int) -> None:
        match provider:
            case ProviderKind.ANTIGRAVITY:
                self._manager.mark_rate_limited(account_id, duration_ms)
            case ProviderKind.CODEX | ProviderKind.COPILOT:
                self._store.mark_rate_limited(provider, account_id, duration_ms)

    def mark_rate_limited_from_error(
        self,
        provider: ProviderKind,
        account_id: str,
        status_code: int,
        body: str | None,
        retry_after: str | None = None,
        model_id: str | None = None,
    ) -> RateLimitDecision | None:
        match provider:
            case ProviderKind.ANTIGRAVITY:
                return self._manager.mark_rate_limited_from_error(
                    account_id,
                    status_code,
                    body,
                    retry_after,
                    model_id,
                )
            case ProviderKind.CODEX | ProviderKind.COPILOT:
                decision = self._store.record_failure(provider, account_id, status_code, body, retry_after)
                if decision is not None:
                    logger.warning(
                        "lb_mark event=%s provider=%s account=%s status=%s model=%s backoff_ms=%s request_id=%s",
                        decision.reason.value,
                        provider.value,
                        self.get_account_display(provider, account_id),
                        status_code,
                        model_id,
                        decision.backoff_ms,
                        get_request_id(),
                    )
                    get_metrics().observe_rate_limit_mark(provider=provider.value, reason=decision.reason.value)
                return decision

    async def acquire_lock(self, provider: ProviderKind, account_id: str) -> ReleaseFn:
        match provider:
            case ProviderKind.ANTIGRAVITY:
                return await self._manager.acquire_account_lock(account_id)
            case _:
                return _noop_release

    def move_to_end_of_queue(self, provider: ProviderKind, account_id: str) -> None:
        if provider == ProviderKind.ANTIGRAVITY:
            self._manager.move_to_end_of_queue(account_id)

    def get_rate_limited_until(self, provider: ProviderKind, account_id: str) -> int | None:
        match provider:
            case ProviderKind.ANTIGRAVITY:
                return self._manager.get_rate_limited_until(account_id)
            case ProviderKind.CODEX | ProviderKind.COPILOT:
                return self._store.get_rate_limited_until(provider, account_id)

    def mark_success(self, provider: ProviderKind, account_id: str) -> None:
        match provider:
            case ProviderKind.ANTIGRAVITY:
                self._manager.mark_success(account_id)
            case ProviderKind.CODEX | ProviderKind.COPILOT:
                self._store.mark_success(provider, account_id)

    def clear_all_rate_limits(self) -> int:
        cleared = self._manager.clear_all_rate_limits()
        cleared += self._store.clear_rate_limits(ProviderKind.CODEX)
        cleared += self._store.clear_rate_limits(ProviderKind.COPILOT)
        return cleared

    def get_account_display(self, provider: ProviderKind, account_id: str) -> str:
        account = self._store.get_account(provider, account_id)
        return account.display_name() if account is not None else account_id

    def has_account(self, provider: ProviderKind, account_id: str) -> bool:
        match provider:
            case ProviderKind.ANTIGRAVITY:
                return self._manager.has_account(account_id)
            case ProviderKind.CODEX | ProviderKind.COPILOT:
                return self._store.has_account(provider, account_id)

    def is_disabled(self, provider: ProviderKind, account_id: str) -> bool:
        account = self._store.get_account(provider, account_id)
        return bool(account and account.disabled)
