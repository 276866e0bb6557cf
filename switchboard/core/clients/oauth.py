from __future__ import annotations

import logging
from dataclasses import dataclass

import aiohttp

from switchboard.core.clients.http import get_http_client
from switchboard.core.config.settings import get_settings
from switchboard.core.errors import RefreshError

logger = logging.getLogger(__name__)

_PERMANENT_REFRESH_ERRORS = frozenset({"invalid_grant", "invalid_client", "unauthorized_client"})


@dataclass(frozen=True, slots=True)
class TokenRefreshResult:
    access_token: str
    expires_in: int
    refresh_token: str | None = None


async def refresh_access_token(
    refresh_token: str,
    *,
    session: aiohttp.ClientSession | None = None,
) -> TokenRefreshResult:
    if not refresh_token:
        raise RefreshError("Missing refresh token", is_permanent=True)

    settings = get_settings()
    client_session = session or get_http_client().session
    form = {
        "client_id": settings.oauth_client_id,
        "client_secret": settings.oauth_client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }
    timeout = aiohttp.ClientTimeout(total=settings.token_refresh_timeout_seconds)
    try:
        async with client_session.post(settings.oauth_token_url, data=form, timeout=timeout) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None
            if resp.status >= 400:
                code = _error_code(data)
                raise RefreshError(
                    f"Token refresh failed status={resp.status} code={code or 'unknown'}",
                    status=resp.status,
                    is_permanent=code in _PERMANENT_REFRESH_ERRORS,
                )
    except aiohttp.ClientError as exc:
        raise RefreshError(f"Token refresh transport error: {exc}") from exc
    except TimeoutError as exc:
        raise RefreshError("Token refresh timed out") from exc

    if not isinstance(data, dict):
        raise RefreshError("Token refresh returned a non-object payload")
    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise RefreshError("Token refresh response missing access_token")
    expires_in = data.get("expires_in")
    new_refresh = data.get("refresh_token")
    return TokenRefreshResult(
        access_token=access_token,
        expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else 3600,
        refresh_token=new_refresh if isinstance(new_refresh, str) and new_refresh else None,
    )


def _error_code(data: object) -> str | None:
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        status = error.get("status") or error.get("code")
        return str(status) if status is not None else None
    return None
