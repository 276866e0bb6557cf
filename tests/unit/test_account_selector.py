from __future__ import annotations

import pytest

from switchboard.core.balancer.types import ProviderKind, RateLimitReason
from switchboard.modules.accounts.auth_manager import AuthManager
from switchboard.modules.accounts.schemas import ProviderAccount
from switchboard.modules.accounts.store import AccountStore
from switchboard.modules.proxy.account_manager import AccountManager
from switchboard.modules.proxy.account_selector import AccountSelector

pytestmark = pytest.mark.unit


async def _no_project(access_token: str) -> str | None:
    return None


async def _selector(tmp_path) -> tuple[AccountSelector, AccountStore]:
    store = AccountStore(tmp_path / "accounts")
    await store.save_account(ProviderAccount(id="p1", provider=ProviderKind.ANTIGRAVITY, email="p1@example.com"))
    await store.save_account(ProviderAccount(id="c1", provider=ProviderKind.CODEX, email="c1@example.com"))
    await store.save_account(ProviderAccount(id="g1", provider=ProviderKind.COPILOT, login="octocat", disabled=True))
    manager = AccountManager(store, AuthManager(store, project_resolver=_no_project))
    return AccountSelector(store, manager), store


@pytest.mark.asyncio
@pytest.mark.parametrize("provider,account_id", [(ProviderKind.ANTIGRAVITY, "p1"), (ProviderKind.CODEX, "c1")])
async def test_error_marks_use_classifier_for_every_provider(tmp_path, provider, account_id):
    selector, _ = await _selector(tmp_path)

    decision = selector.mark_rate_limited_from_error(provider, account_id, 429, "Too many requests per minute")

    assert decision is not None
    assert decision.reason == RateLimitReason.RATE_LIMIT_EXCEEDED
    assert decision.backoff_ms == 30_000
    assert selector.is_rate_limited(provider, account_id)
    assert selector.get_rate_limited_until(provider, account_id) is not None


@pytest.mark.asyncio
async def test_unknown_account_error_mark_returns_none(tmp_path):
    selector, _ = await _selector(tmp_path)
    assert selector.mark_rate_limited_from_error(ProviderKind.COPILOT, "ghost", 429, "") is None


@pytest.mark.asyncio
async def test_secondary_lock_is_noop(tmp_path):
    selector, _ = await _selector(tmp_path)

    release = await selector.acquire_lock(ProviderKind.CODEX, "c1")
    again = await selector.acquire_lock(ProviderKind.CODEX, "c1")
    release()
    again()

    assert selector.is_in_flight(ProviderKind.CODEX, "c1") is False


@pytest.mark.asyncio
async def test_primary_lock_tracks_in_flight(tmp_path):
    selector, _ = await _selector(tmp_path)

    release = await selector.acquire_lock(ProviderKind.ANTIGRAVITY, "p1")
    assert selector.is_in_flight(ProviderKind.ANTIGRAVITY, "p1") is True
    release()
    assert selector.is_in_flight(ProviderKind.ANTIGRAVITY, "p1") is False


@pytest.mark.asyncio
async def test_mark_success_and_clear_all(tmp_path):
    selector, _ = await _selector(tmp_path)
    selector.mark_rate_limited(ProviderKind.ANTIGRAVITY, "p1", 60_000)
    selector.mark_rate_limited(ProviderKind.CODEX, "c1", 60_000)
    selector.mark_rate_limited(ProviderKind.COPILOT, "g1", 60_000)

    selector.mark_success(ProviderKind.CODEX, "c1")
    assert selector.is_rate_limited(ProviderKind.CODEX, "c1") is False

    assert selector.clear_all_rate_limits() == 2
    assert selector.is_rate_limited(ProviderKind.ANTIGRAVITY, "p1") is False
    assert selector.is_rate_limited(ProviderKind.COPILOT, "g1") is False


@pytest.mark.asyncio
async def test_account_metadata(tmp_path):
    selector, _ = await _selector(tmp_path)

    assert selector.get_account_display(ProviderKind.COPILOT, "g1") == "octocat"
    assert selector.get_account_display(ProviderKind.CODEX, "ghost") == "ghost"
    assert selector.has_account(ProviderKind.ANTIGRAVITY, "p1") is True
    assert selector.has_account(ProviderKind.CODEX, "p1") is False
    assert selector.is_disabled(ProviderKind.COPILOT, "g1") is True
    assert selector.is_disabled(ProviderKind.CODEX, "c1") is False
