from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import anyio.to_thread
from pydantic import ValidationError

from switchboard.core.balancer.logic import classify_rate_limit
from switchboard.core.balancer.types import ProviderKind, RateLimitDecision
from switchboard.core.utils.files import JsonFileStore
from switchboard.core.utils.time import now_ms
from switchboard.modules.accounts.schemas import AccountsDocument, ProviderAccount

logger = logging.getLogger(__name__)


class AccountStore:
    """Per-provider account tables held in memory and flushed to one JSON file per provider.

    Rate-limit bookkeeping lives on the in-memory records only. Mutations of those
    fields never await, so concurrent request tasks always observe a consistent
    ``rate_limited_until``/``consecutive_failures`` pair.
    """

    def __init__(self, accounts_dir: str | Path) -> None:
        self._dir = Path(accounts_dir)
        self._accounts: dict[ProviderKind, dict[str, ProviderAccount]] = {kind: {} for kind in ProviderKind}
        self._files = {kind: JsonFileStore(self._dir / f"{kind.value}.json") for kind in ProviderKind}
        self._flush_locks = {kind: asyncio.Lock() for kind in ProviderKind}

    def load(self) -> None:
        for kind in ProviderKind:
            self._accounts[kind] = self._read(kind)

    def _read(self, provider: ProviderKind) -> dict[str, ProviderAccount]:
        raw = self._files[provider].load(default={"accounts": []})
        entries = raw.get("accounts") if isinstance(raw, dict) else None
        loaded: dict[str, ProviderAccount] = {}
        if not isinstance(entries, list):
            return loaded
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                account = ProviderAccount.model_validate({**entry, "provider": provider.value})
            except ValidationError:
                logger.warning("account_store_skip_invalid provider=%s id=%s", provider.value, entry.get("id"))
                continue
            account.reset_runtime()
            loaded[account.id] = account
        return loaded

    async def flush(self, provider: ProviderKind) -> None:
        async with self._flush_locks[provider]:
            document = AccountsDocument(accounts=self.list_accounts(provider))
            payload = document.model_dump(mode="json", by_alias=True)
            await anyio.to_thread.run_sync(self._files[provider].write, payload)

    def list_accounts(self, provider: ProviderKind) -> list[ProviderAccount]:
        # Creation order is the expansion order for smart-switch routing.
        return sorted(self._accounts[provider].values(), key=lambda account: account.created_at)

    def get_account(self, provider: ProviderKind, account_id: str) -> ProviderAccount | None:
        return self._accounts[provider].get(account_id)

    def has_account(self, provider: ProviderKind, account_id: str) -> bool:
        return account_id in self._accounts[provider]

    def count(self, provider: ProviderKind) -> int:
        return len(self._accounts[provider])

    async def save_account(self, account: ProviderAccount) -> ProviderAccount:
        existing = self._accounts[account.provider].get(account.id)
        if existing is not None:
            if "created_at" not in account.model_fields_set:
                account.created_at = existing.created_at
            account.rate_limited_until = existing.rate_limited_until
            account.consecutive_failures = existing.consecutive_failures
            account.in_flight = existing.in_flight
        self._accounts[account.provider][account.id] = account
        await self.flush(account.provider)
        return account

    async def delete_account(self, provider: ProviderKind, account_id: str) -> bool:
        if self._accounts[provider].pop(account_id, None) is None:
            return False
        await self.flush(provider)
        return True

    def is_rate_limited(self, provider: ProviderKind, account_id: str, *, now: int | None = None) -> bool:
        account = self._accounts[provider].get(account_id)
        if account is None or account.rate_limited_until is None:
            return False
        current = now if now is not None else now_ms()
        return account.rate_limited_until > current

    def get_rate_limited_until(self, provider: ProviderKind, account_id: str) -> int | None:
        account = self._accounts[provider].get(account_id)
        if account is None or account.rate_limited_until is None:
            return None
        if account.rate_limited_until <= now_ms():
            return None
        return account.rate_limited_until

    def mark_rate_limited(self, provider: ProviderKind, account_id: str, duration_ms: int) -> int | None:
        account = self._accounts[provider].get(account_id)
        if account is None:
            return None
        account.consecutive_failures += 1
        return _extend_until(account, now_ms() + max(0, int(duration_ms)))

    def record_failure(
        self,
        provider: ProviderKind,
        account_id: str,
        status_code: int,
        body: str | None,
        retry_after: str | None = None,
    ) -> RateLimitDecision | None:
        account = self._accounts[provider].get(account_id)
        if account is None:
            return None
        failures = account.consecutive_failures + 1
        decision = classify_rate_limit(status_code, body, retry_after, failures)
        account.consecutive_failures = failures
        _extend_until(account, now_ms() + decision.backoff_ms)
        return decision

    def mark_success(self, provider: ProviderKind, account_id: str) -> None:
        account = self._accounts[provider].get(account_id)
        if account is None:
            return
        account.rate_limited_until = None
        account.consecutive_failures = 0

    def clear_rate_limits(self, provider: ProviderKind | None = None) -> int:
        kinds = [provider] if provider is not None else list(ProviderKind)
        cleared = 0
        for kind in kinds:
            for account in self._accounts[kind].values():
                if account.rate_limited_until is not None or account.consecutive_failures:
                    cleared += 1
                account.rate_limited_until = None
                account.consecutive_failures = 0
        return cleared


def _extend_until(account: ProviderAccount, until: int) -> int:
    # A shorter backoff never shortens an active one.
    current = account.rate_limited_until
    if current is None or current < until:
        account.rate_limited_until = until
    return account.rate_limited_until
