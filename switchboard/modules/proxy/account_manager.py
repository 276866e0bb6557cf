from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from switchboard.core.balancer.types import PRIMARY_PROVIDER, RateLimitDecision
from switchboard.core.clients.quota import QuotaSnapshot, fetch_available_models, pick_reset_time
from switchboard.core.config.settings import get_settings
from switchboard.core.errors import QuotaFetchError, RefreshError, UpstreamError
from switchboard.core.metrics import get_metrics
from switchboard.core.utils.request_id import get_request_id
from switchboard.core.utils.time import ms_to_iso, now_ms, parse_iso_ms
from switchboard.modules.accounts.auth_manager import AuthManager
from switchboard.modules.accounts.schemas import ProviderAccount
from switchboard.modules.accounts.store import AccountStore
from switchboard.modules.proxy.providers import AccountCredential

QuotaFetcher = Callable[[str, str | None], Awaitable[QuotaSnapshot]]
Sleep = Callable[[float], Awaitable[None]]
ReleaseFn = Callable[[], None]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _StickyChoice:
    account_id: str
    selected_at: int


class AccountManager:
    """Account pool for the primary provider.

    Selection is sticky for a short window, rotates past rate-limited accounts,
    and when every account is locked out either resets optimistically (waits are
    implausibly short) or asks the upstream for live quota before giving up.
    """

    def __init__(
        self,
        store: AccountStore,
        auth: AuthManager,
        *,
        quota_fetcher: QuotaFetcher | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._store = store
        self._auth = auth
        self._quota_fetcher = quota_fetcher or fetch_available_models
        self._sleep = sleep or asyncio.sleep
        self._cursor = 0
        self._sticky: _StickyChoice | None = None
        self._locks: dict[str, asyncio.Lock] = {}

    def _accounts(self) -> list[ProviderAccount]:
        return self._store.list_accounts(PRIMARY_PROVIDER)

    def count(self) -> int:
        return self._store.count(PRIMARY_PROVIDER)

    def has_account(self, account_id: str) -> bool:
        return self._store.has_account(PRIMARY_PROVIDER, account_id)

    def get_emails(self) -> list[str]:
        return [account.email or account.id for account in self._accounts()]

    async def add_account(self, account: ProviderAccount) -> ProviderAccount:
        account.provider = PRIMARY_PROVIDER
        saved = await self._store.save_account(account)
        # Re-adding an account (fresh login) lifts any lockout carried over from the old record.
        self._store.mark_success(PRIMARY_PROVIDER, saved.id)
        logger.info("account_added provider=%s account=%s", PRIMARY_PROVIDER.value, saved.display_name())
        return saved

    async def remove_account(self, account_id_or_email: str) -> bool:
        target = self._store.get_account(PRIMARY_PROVIDER, account_id_or_email)
        if target is None:
            target = next(
                (account for account in self._accounts() if account.email == account_id_or_email),
                None,
            )
        if target is None:
            logger.warning("account_remove_missing provider=%s key=%s", PRIMARY_PROVIDER.value, account_id_or_email)
            return False
        await self._store.delete_account(PRIMARY_PROVIDER, target.id)
        self._locks.pop(target.id, None)
        if self._sticky is not None and self._sticky.account_id == target.id:
            self._sticky = None
        logger.info("account_removed provider=%s account=%s", PRIMARY_PROVIDER.value, target.display_name())
        return True

    def is_account_rate_limited(self, account_id: str) -> bool:
        return self._store.is_rate_limited(PRIMARY_PROVIDER, account_id)

    def is_account_in_flight(self, account_id: str) -> bool:
        account = self._store.get_account(PRIMARY_PROVIDER, account_id)
        return bool(account and account.in_flight)

    def get_rate_limited_until(self, account_id: str) -> int | None:
        return self._store.get_rate_limited_until(PRIMARY_PROVIDER, account_id)

    def mark_rate_limited(self, account_id: str, duration_ms: int = 60_000) -> None:
        until = self._store.mark_rate_limited(PRIMARY_PROVIDER, account_id, duration_ms)
        if until is None:
            return
        account = self._store.get_account(PRIMARY_PROVIDER, account_id)
        logger.warning(
            "lb_mark event=rate_limit account=%s duration_ms=%s failures=%s until=%s request_id=%s",
            account.display_name() if account else account_id,
            duration_ms,
            account.consecutive_failures if account else None,
            ms_to_iso(until),
            get_request_id(),
        )

    def mark_rate_limited_from_error(
        self,
        account_id: str,
        status_code: int,
        body: str | None,
        retry_after: str | None = None,
        model_id: str | None = None,
    ) -> RateLimitDecision | None:
        decision = self._store.record_failure(PRIMARY_PROVIDER, account_id, status_code, body, retry_after)
        if decision is None:
            return None
        account = self._store.get_account(PRIMARY_PROVIDER, account_id)
        logger.warning(
            "lb_mark event=%s account=%s status=%s model=%s backoff_ms=%s failures=%s request_id=%s",
            decision.reason.value,
            account.display_name() if account else account_id,
            status_code,
            model_id,
            decision.backoff_ms,
            account.consecutive_failures if account else None,
            get_request_id(),
        )
        get_metrics().observe_rate_limit_mark(provider=PRIMARY_PROVIDER.value, reason=decision.reason.value)
        return decision

    def mark_success(self, account_id: str) -> None:
        self._store.mark_success(PRIMARY_PROVIDER, account_id)

    def clear_all_rate_limits(self) -> int:
        cleared = self._store.clear_rate_limits(PRIMARY_PROVIDER)
        if cleared:
            logger.info("rate_limits_cleared provider=%s count=%s", PRIMARY_PROVIDER.value, cleared)
        return cleared

    def move_to_end_of_queue(self, account_id: str) -> None:
        accounts = self._accounts()
        ids = [account.id for account in accounts]
        if account_id not in ids:
            return
        if self._sticky is not None and self._sticky.account_id == account_id:
            self._sticky = None
        if ids[self._cursor % len(ids)] == account_id:
            self._cursor = (ids.index(account_id) + 1) % len(ids)

    async def acquire_account_lock(self, account_id: str) -> ReleaseFn:
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        await lock.acquire()
        account = self._store.get_account(PRIMARY_PROVIDER, account_id)
        if account is not None:
            account.in_flight = True
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            current = self._store.get_account(PRIMARY_PROVIDER, account_id)
            if current is not None:
                current.in_flight = False
            lock.release()

        return release

    async def get_next_available_account(self, force_rotate: bool = False) -> AccountCredential | None:
        settings = get_settings()
        accounts = [account for account in self._accounts() if not account.disabled]
        if not accounts:
            get_metrics().observe_account_select(outcome="no_accounts")
            return None
        now = now_ms()

        if not force_rotate and self._sticky is not None:
            sticky = self._store.get_account(PRIMARY_PROVIDER, self._sticky.account_id)
            elapsed = now - self._sticky.selected_at
            if (
                sticky is not None
                and not sticky.disabled
                and elapsed < settings.sticky_window_seconds * 1000
                and not self._store.is_rate_limited(PRIMARY_PROVIDER, sticky.id, now=now)
            ):
                if self._auth.needs_refresh(sticky, now=now):
                    try:
                        await self._auth.refresh_account(sticky)
                    except RefreshError as exc:
                        # The stale token is still handed out; the upstream call will surface any auth failure.
                        logger.warning("token_refresh_failed account=%s error=%s", sticky.display_name(), exc)
                logger.debug("account_select event=sticky account=%s elapsed_ms=%s", sticky.display_name(), elapsed)
                get_metrics().observe_account_select(outcome="sticky")
                return await self._credential(sticky)

        attempts = 0
        while attempts < len(accounts):
            if force_rotate or attempts > 0:
                self._cursor = (self._cursor + 1) % len(accounts)
            self._cursor %= len(accounts)
            account = accounts[self._cursor]

            if self._store.is_rate_limited(PRIMARY_PROVIDER, account.id, now=now):
                attempts += 1
                continue

            if self._auth.needs_refresh(account, now=now):
                try:
                    await self._auth.refresh_account(account)
                except RefreshError as exc:
                    logger.warning(
                        "token_refresh_failed account=%s error=%s backoff_ms=%s",
                        account.display_name(),
                        exc,
                        settings.refresh_failure_backoff_ms,
                    )
                    account.rate_limited_until = now + settings.refresh_failure_backoff_ms
                    attempts += 1
                    continue

            self._sticky = _StickyChoice(account_id=account.id, selected_at=now_ms())
            get_metrics().observe_account_select(outcome="rotated")
            return await self._credential(account)

        return await self._select_when_exhausted(accounts)

    async def _select_when_exhausted(self, accounts: list[ProviderAccount]) -> AccountCredential | None:
        settings = get_settings()
        now = now_ms()
        best = accounts[0]
        min_wait: int | None = None
        for account in accounts:
            if account.rate_limited_until is None:
                best = account
                min_wait = 0
                break
            wait = max(account.rate_limited_until - now, 0)
            if min_wait is None or wait < min_wait:
                min_wait = wait
                best = account
        if min_wait is None:
            return None

        if min_wait <= settings.optimistic_reset_threshold_ms:
            logger.warning("accounts_exhausted min_wait_ms=%s action=recheck", min_wait)
            await self._sleep(settings.optimistic_reset_wait_ms / 1000)
            recovered = next(
                (account for account in accounts if not self._store.is_rate_limited(PRIMARY_PROVIDER, account.id)),
                None,
            )
            if recovered is not None:
                get_metrics().observe_account_select(outcome="recovered")
                return await self._credential(recovered)
            logger.warning("accounts_exhausted action=optimistic_reset count=%s", len(accounts))
            self._store.clear_rate_limits(PRIMARY_PROVIDER)
            get_metrics().inc_optimistic_reset()
            get_metrics().observe_account_select(outcome="optimistic_reset")
            return await self._credential(best)

        logger.warning("accounts_exhausted min_wait_ms=%s action=quota_validation", min_wait)
        if not settings.quota_validation_enabled:
            get_metrics().observe_account_select(outcome="exhausted")
            return None

        for account in accounts:
            try:
                snapshot = await self._fetch_quota(account)
            except (UpstreamError, QuotaFetchError, RefreshError) as exc:
                logger.debug("quota_validation_failed account=%s error=%s", account.display_name(), exc)
                get_metrics().observe_quota_validation(outcome="error")
                continue

            if snapshot.has_available_quota():
                logger.info("quota_validation account=%s outcome=available", account.display_name())
                get_metrics().observe_quota_validation(outcome="available")
                self._store.mark_success(PRIMARY_PROVIDER, account.id)
                self._sticky = _StickyChoice(account_id=account.id, selected_at=now_ms())
                get_metrics().observe_account_select(outcome="quota_validated")
                return await self._credential(account)

            get_metrics().observe_quota_validation(outcome="exhausted")
            reset_ms = parse_iso_ms(pick_reset_time(snapshot.models))
            if reset_ms is not None:
                locked_until = reset_ms + settings.reset_time_buffer_ms
                if locked_until != account.rate_limited_until:
                    logger.info(
                        "quota_validation account=%s outcome=exhausted reset_at=%s",
                        account.display_name(),
                        ms_to_iso(locked_until),
                    )
                    account.rate_limited_until = locked_until

        get_metrics().observe_account_select(outcome="exhausted")
        return None

    async def get_account_by_id(
        self,
        account_id: str,
        *,
        ignore_rate_limit: bool = False,
    ) -> AccountCredential | None:
        account = self._store.get_account(PRIMARY_PROVIDER, account_id)
        if account is None or account.disabled:
            return None
        now = now_ms()
        if not ignore_rate_limit and self._store.is_rate_limited(PRIMARY_PROVIDER, account_id, now=now):
            return None
        if self._auth.needs_refresh(account, now=now):
            try:
                await self._auth.refresh_account(account)
            except RefreshError as exc:
                backoff_ms = get_settings().refresh_failure_backoff_ms
                logger.warning(
                    "token_refresh_failed account=%s error=%s backoff_ms=%s",
                    account.display_name(),
                    exc,
                    backoff_ms,
                )
                account.rate_limited_until = now + backoff_ms
                return None
        return await self._credential(account)

    async def _fetch_quota(self, account: ProviderAccount) -> QuotaSnapshot:
        # One refresh-and-retry when the quota endpoint rejects a stale token.
        try:
            snapshot = await self._quota_fetcher(account.access_token, account.project_id)
        except UpstreamError as exc:
            if exc.status != 401 or not account.refresh_token:
                raise
            await self._auth.refresh_account(account)
            snapshot = await self._quota_fetcher(account.access_token, account.project_id)
        if not account.project_id and snapshot.project_id:
            account.project_id = snapshot.project_id
            await self._store.save_account(account)
        return snapshot

    async def _credential(self, account: ProviderAccount) -> AccountCredential:
        project_id = await self._auth.ensure_project_id(account)
        return AccountCredential(
            provider=PRIMARY_PROVIDER,
            account_id=account.id,
            access_token=account.access_token,
            display=account.display_name(),
            project_id=project_id,
        )
