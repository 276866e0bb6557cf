from __future__ import annotations

import re

import pytest

from switchboard.core.balancer.types import ProviderKind
from switchboard.core.clients.oauth import TokenRefreshResult
from switchboard.core.errors import QuotaFetchError, RefreshError
from switchboard.core.utils.time import now_ms
from switchboard.modules.accounts.auth_manager import AuthManager, generate_placeholder_project_id
from switchboard.modules.accounts.schemas import ProviderAccount
from switchboard.modules.accounts.store import AccountStore

pytestmark = pytest.mark.unit

_PLACEHOLDER_RE = re.compile(r"^[a-z]+-[a-z]+-[0-9a-z]{5}$")


def _account(**kwargs) -> ProviderAccount:
    defaults = {
        "id": "a1",
        "provider": ProviderKind.ANTIGRAVITY,
        "email": "a1@example.com",
        "access_token": "old-access",
        "refresh_token": "old-refresh",
    }
    defaults.update(kwargs)
    return ProviderAccount(**defaults)


async def _refresh_ok(refresh_token: str) -> TokenRefreshResult:
    return TokenRefreshResult(access_token="new-access", expires_in=1800, refresh_token="new-refresh")


async def _refresh_fail(refresh_token: str) -> TokenRefreshResult:
    raise RefreshError("invalid_grant", status=400, is_permanent=True)


async def _project(access_token: str) -> str | None:
    return "resolved-project"


async def _no_project(access_token: str) -> str | None:
    return None


async def _project_error(access_token: str) -> str | None:
    raise QuotaFetchError(0, "loadCodeAssist transport error")


def test_placeholder_project_id_shape():
    assert _PLACEHOLDER_RE.match(generate_placeholder_project_id())


def test_needs_refresh_uses_skew(tmp_path):
    auth = AuthManager(AccountStore(tmp_path), refresher=_refresh_ok, project_resolver=_project)
    now = now_ms()
    assert auth.needs_refresh(_account(expires_at=0), now=now) is False
    assert auth.needs_refresh(_account(expires_at=now + 60 * 60_000), now=now) is False
    assert auth.needs_refresh(_account(expires_at=now + 60_000), now=now) is True
    assert auth.needs_refresh(_account(expires_at=now - 1), now=now) is True


@pytest.mark.asyncio
async def test_refresh_updates_tokens_and_persists(tmp_path):
    store = AccountStore(tmp_path)
    account = await store.save_account(_account())
    auth = AuthManager(store, refresher=_refresh_ok, project_resolver=_project)
    before = now_ms()

    await auth.refresh_account(account)

    assert account.access_token == "new-access"
    assert account.refresh_token == "new-refresh"
    assert account.expires_at >= before + 1_800_000
    assert account.project_id == "resolved-project"

    reloaded = AccountStore(tmp_path)
    reloaded.load()
    assert reloaded.get_account(ProviderKind.ANTIGRAVITY, "a1").access_token == "new-access"


@pytest.mark.asyncio
async def test_refresh_failure_propagates(tmp_path):
    store = AccountStore(tmp_path)
    account = await store.save_account(_account())
    auth = AuthManager(store, refresher=_refresh_fail, project_resolver=_project)

    with pytest.raises(RefreshError) as excinfo:
        await auth.refresh_account(account)

    assert excinfo.value.is_permanent is True
    assert account.access_token == "old-access"


@pytest.mark.asyncio
async def test_ensure_fresh_skips_valid_token(tmp_path):
    store = AccountStore(tmp_path)
    account = await store.save_account(_account(expires_at=now_ms() + 60 * 60_000))
    auth = AuthManager(store, refresher=_refresh_fail, project_resolver=_project)

    assert (await auth.ensure_fresh(account)).access_token == "old-access"
    with pytest.raises(RefreshError):
        await auth.ensure_fresh(account, force=True)


@pytest.mark.asyncio
async def test_ensure_project_id_keeps_known_project(tmp_path):
    store = AccountStore(tmp_path)
    account = await store.save_account(_account(project_id="mine"))
    auth = AuthManager(store, refresher=_refresh_ok, project_resolver=_project)

    assert await auth.ensure_project_id(account) == "mine"


@pytest.mark.asyncio
@pytest.mark.parametrize("resolver", [_no_project, _project_error])
async def test_ensure_project_id_falls_back_to_placeholder(tmp_path, resolver):
    store = AccountStore(tmp_path)
    account = await store.save_account(_account())
    auth = AuthManager(store, refresher=_refresh_ok, project_resolver=resolver)

    project_id = await auth.ensure_project_id(account)

    assert _PLACEHOLDER_RE.match(project_id)
    assert account.project_id == project_id
