from __future__ import annotations

import pytest

from switchboard.core.balancer.types import ProviderKind
from switchboard.core.clients.oauth import TokenRefreshResult
from switchboard.core.clients.quota import ModelQuota, QuotaSnapshot
from switchboard.core.errors import RefreshError, UpstreamError
from switchboard.core.utils.time import now_ms, parse_iso_ms
from switchboard.modules.accounts.auth_manager import AuthManager
from switchboard.modules.accounts.schemas import ProviderAccount
from switchboard.modules.accounts.store import AccountStore
from switchboard.modules.proxy.account_manager import AccountManager

pytestmark = pytest.mark.unit

_PRIMARY = ProviderKind.ANTIGRAVITY
_RESET_TIME = "2099-01-01T00:00:00Z"


class _FakeRefresher:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[str] = []

    async def __call__(self, refresh_token: str) -> TokenRefreshResult:
        self.calls.append(refresh_token)
        if self.fail:
            raise RefreshError("invalid_grant", status=400, is_permanent=True)
        return TokenRefreshResult(access_token=f"fresh-{len(self.calls)}", expires_in=3600)


class _FakeQuota:
    def __init__(self, snapshots: list[QuotaSnapshot | Exception]) -> None:
        self._snapshots = list(snapshots)
        self.calls: list[str] = []

    async def __call__(self, access_token: str, project_id: str | None) -> QuotaSnapshot:
        self.calls.append(access_token)
        outcome = self._snapshots.pop(0) if self._snapshots else QuotaSnapshot()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _FakeSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


async def _no_project(access_token: str) -> str | None:
    return None


async def _manager(
    tmp_path,
    count: int = 2,
    *,
    refresher: _FakeRefresher | None = None,
    quota: _FakeQuota | None = None,
    sleep: _FakeSleep | None = None,
    **account_kwargs,
) -> tuple[AccountManager, AccountStore]:
    store = AccountStore(tmp_path / "accounts")
    for index in range(count):
        await store.save_account(
            ProviderAccount(
                id=f"a{index + 1}",
                provider=_PRIMARY,
                email=f"a{index + 1}@example.com",
                access_token=f"access-{index + 1}",
                refresh_token=f"refresh-{index + 1}",
                project_id="proj-1",
                created_at=f"2026-01-0{index + 1}T00:00:00Z",
                **account_kwargs,
            )
        )
    auth = AuthManager(store, refresher=refresher or _FakeRefresher(), project_resolver=_no_project)
    manager = AccountManager(store, auth, quota_fetcher=quota or _FakeQuota([]), sleep=sleep or _FakeSleep())
    return manager, store


@pytest.mark.asyncio
async def test_selection_is_sticky_within_window(tmp_path):
    manager, _ = await _manager(tmp_path)

    first = await manager.get_next_available_account()
    second = await manager.get_next_available_account()

    assert first is not None and second is not None
    assert first.account_id == "a1"
    assert second.account_id == "a1"
    assert first.project_id == "proj-1"


@pytest.mark.asyncio
async def test_rate_limited_sticky_account_rotates(tmp_path):
    manager, _ = await _manager(tmp_path, count=3)
    await manager.get_next_available_account()

    manager.mark_rate_limited("a1", 60_000)
    selected = await manager.get_next_available_account()

    assert selected is not None
    assert selected.account_id == "a2"


@pytest.mark.asyncio
async def test_force_rotate_moves_cursor(tmp_path):
    manager, _ = await _manager(tmp_path, count=3)
    await manager.get_next_available_account()

    rotated = await manager.get_next_available_account(force_rotate=True)

    assert rotated is not None
    assert rotated.account_id == "a2"


@pytest.mark.asyncio
async def test_no_accounts_returns_none(tmp_path):
    manager, _ = await _manager(tmp_path, count=0)
    assert await manager.get_next_available_account() is None


@pytest.mark.asyncio
async def test_optimistic_reset_clears_flags_once(tmp_path):
    sleep = _FakeSleep()
    manager, store = await _manager(tmp_path, sleep=sleep)
    manager.mark_rate_limited("a1", 1_000)
    manager.mark_rate_limited("a2", 1_500)

    selected = await manager.get_next_available_account()

    assert selected is not None
    assert selected.account_id == "a1"
    assert sleep.calls == [0.5]
    assert not store.is_rate_limited(_PRIMARY, "a1")
    assert not store.is_rate_limited(_PRIMARY, "a2")


@pytest.mark.asyncio
async def test_exhausted_pool_returns_none_and_records_reset(tmp_path):
    exhausted = QuotaSnapshot(models={"claude-sonnet-4-5": ModelQuota(remaining_fraction=0.0, reset_time=_RESET_TIME)})
    quota = _FakeQuota([exhausted, exhausted])
    manager, store = await _manager(tmp_path, quota=quota)
    manager.mark_rate_limited("a1", 600_000)
    manager.mark_rate_limited("a2", 600_000)

    selected = await manager.get_next_available_account()

    assert selected is None
    assert quota.calls == ["access-1", "access-2"]
    expected_until = parse_iso_ms(_RESET_TIME) + 2_000
    assert store.get_account(_PRIMARY, "a1").rate_limited_until == expected_until
    assert store.get_account(_PRIMARY, "a2").rate_limited_until == expected_until


@pytest.mark.asyncio
async def test_quota_validation_recovers_account_with_quota(tmp_path):
    available = QuotaSnapshot(models={"gemini-3-pro": ModelQuota(remaining_fraction=0.4)})
    quota = _FakeQuota([QuotaSnapshot(), available])
    manager, store = await _manager(tmp_path, quota=quota)
    manager.mark_rate_limited("a1", 600_000)
    manager.mark_rate_limited("a2", 600_000)

    selected = await manager.get_next_available_account()

    assert selected is not None
    assert selected.account_id == "a2"
    assert not store.is_rate_limited(_PRIMARY, "a2")
    assert store.is_rate_limited(_PRIMARY, "a1")


@pytest.mark.asyncio
async def test_quota_fetch_refreshes_once_on_unauthorized(tmp_path):
    available = QuotaSnapshot(models={"gemini-3-pro": ModelQuota(remaining_fraction=1.0)}, project_id="proj-2")
    refresher = _FakeRefresher()
    quota = _FakeQuota([UpstreamError("antigravity", 401, "expired"), available])
    manager, store = await _manager(tmp_path, count=1, refresher=refresher, quota=quota)
    manager.mark_rate_limited("a1", 600_000)

    selected = await manager.get_next_available_account()

    assert selected is not None
    assert refresher.calls == ["refresh-1"]
    assert quota.calls == ["access-1", "fresh-1"]
    assert store.get_account(_PRIMARY, "a1").access_token == "fresh-1"


@pytest.mark.asyncio
async def test_refresh_failure_holds_account_without_counting_failure(tmp_path):
    refresher = _FakeRefresher(fail=True)
    manager, store = await _manager(tmp_path, refresher=refresher, expires_at=1)
    before = now_ms()

    selected = await manager.get_next_available_account()

    # Both accounts need a refresh and both fail; the empty quota snapshot keeps them held.
    assert selected is None
    assert refresher.calls == ["refresh-1", "refresh-2"]
    held = store.get_account(_PRIMARY, "a1")
    assert held.rate_limited_until is not None
    assert held.rate_limited_until >= before + 60_000
    assert held.consecutive_failures == 0


@pytest.mark.asyncio
async def test_refresh_failure_skips_to_next_account(tmp_path):
    refresher = _FakeRefresher(fail=True)
    manager, store = await _manager(tmp_path, count=1, refresher=refresher, expires_at=1)
    await store.save_account(
        ProviderAccount(
            id="a2",
            provider=_PRIMARY,
            email="a2@example.com",
            access_token="access-2",
            refresh_token="refresh-2",
            project_id="proj-1",
            created_at="2026-01-02T00:00:00Z",
        )
    )

    selected = await manager.get_next_available_account()

    assert selected is not None
    assert selected.account_id == "a2"
    assert store.is_rate_limited(_PRIMARY, "a1")


@pytest.mark.asyncio
async def test_lock_release_is_idempotent(tmp_path):
    manager, _ = await _manager(tmp_path, count=1)

    release = await manager.acquire_account_lock("a1")
    assert manager.is_account_in_flight("a1")
    release()
    release()
    assert not manager.is_account_in_flight("a1")

    again = await manager.acquire_account_lock("a1")
    assert manager.is_account_in_flight("a1")
    again()


@pytest.mark.asyncio
async def test_get_account_by_id_respects_rate_limits(tmp_path):
    manager, _ = await _manager(tmp_path)
    manager.mark_rate_limited("a2", 60_000)

    assert await manager.get_account_by_id("missing") is None
    assert await manager.get_account_by_id("a2") is None
    forced = await manager.get_account_by_id("a2", ignore_rate_limit=True)
    assert forced is not None
    assert forced.account_id == "a2"


@pytest.mark.asyncio
async def test_mark_rate_limited_from_error_uses_classifier(tmp_path):
    manager, _ = await _manager(tmp_path)

    decision = manager.mark_rate_limited_from_error("a1", 503, "upstream overloaded")

    assert decision is not None
    assert decision.backoff_ms == 20_000
    assert manager.is_account_rate_limited("a1")
    assert manager.get_rate_limited_until("a1") is not None


@pytest.mark.asyncio
async def test_remove_account_by_email(tmp_path):
    manager, _ = await _manager(tmp_path)

    assert await manager.remove_account("a2@example.com") is True
    assert await manager.remove_account("a2@example.com") is False
    assert manager.get_emails() == ["a1@example.com"]
    assert manager.count() == 1


@pytest.mark.asyncio
async def test_add_account_forces_primary_provider_and_clears_runtime(tmp_path):
    manager, store = await _manager(tmp_path, count=0)
    account = ProviderAccount(
        id="new",
        provider=ProviderKind.CODEX,
        email="new@example.com",
        access_token="access-new",
        project_id="proj-1",
        rate_limited_until=now_ms() + 60_000,
    )

    saved = await manager.add_account(account)

    assert saved.provider == _PRIMARY
    assert saved.rate_limited_until is None
    assert store.has_account(_PRIMARY, "new")
    assert not store.has_account(ProviderKind.CODEX, "new")
    assert manager.get_emails() == ["new@example.com"]


@pytest.mark.asyncio
async def test_sticky_refresh_failure_still_returns_current_token(tmp_path):
    refresher = _FakeRefresher(fail=True)
    manager, store = await _manager(tmp_path, refresher=refresher)
    first = await manager.get_next_available_account()
    assert first is not None and first.account_id == "a1"

    store.get_account(_PRIMARY, "a1").expires_at = 1
    selected = await manager.get_next_available_account()

    assert selected is not None
    assert selected.account_id == "a1"
    assert selected.access_token == "access-1"
    assert refresher.calls == ["refresh-1"]
    assert not store.is_rate_limited(_PRIMARY, "a1")


@pytest.mark.asyncio
async def test_disabled_account_is_never_selected(tmp_path):
    manager, store = await _manager(tmp_path)
    store.get_account(_PRIMARY, "a1").disabled = True

    selected = await manager.get_next_available_account()

    assert selected is not None
    assert selected.account_id == "a2"
    assert await manager.get_account_by_id("a1") is None
    assert await manager.get_account_by_id("a1", ignore_rate_limit=True) is None


@pytest.mark.asyncio
async def test_disabled_sticky_account_rotates(tmp_path):
    manager, store = await _manager(tmp_path)
    await manager.get_next_available_account()

    store.get_account(_PRIMARY, "a1").disabled = True
    selected = await manager.get_next_available_account()

    assert selected is not None
    assert selected.account_id == "a2"


@pytest.mark.asyncio
async def test_readding_rate_limited_account_lifts_lockout(tmp_path):
    manager, store = await _manager(tmp_path, count=1)
    manager.mark_rate_limited_from_error("a1", 503, "upstream overloaded")
    assert manager.is_account_rate_limited("a1")

    saved = await manager.add_account(
        ProviderAccount(
            id="a1",
            provider=_PRIMARY,
            email="a1@example.com",
            access_token="access-new",
            refresh_token="refresh-new",
            project_id="proj-1",
        )
    )

    assert saved.rate_limited_until is None
    assert saved.consecutive_failures == 0
    assert not manager.is_account_rate_limited("a1")
    selected = await manager.get_next_available_account()
    assert selected is not None and selected.access_token == "access-new"
