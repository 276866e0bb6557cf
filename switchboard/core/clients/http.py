from __future__ import annotations

from dataclasses import dataclass
from typing import Final

import aiohttp
from aiohttp_retry import ExponentialRetry, RetryClient

from switchboard.core.config.settings import Settings, get_settings

USER_AGENT: Final[str] = "switchboard/0.1"
_RETRYABLE_STATUSES: Final[frozenset[int]] = frozenset({502, 503, 504})


@dataclass(slots=True)
class HttpClient:
    """Process-wide session for token refresh and quota lookups.

    Provider completion traffic goes through the provider clients; this session
    only carries the small control-plane calls the account pool makes.
    """

    session: aiohttp.ClientSession
    retry_client: RetryClient
    quota_retry: ExponentialRetry


_http_client: HttpClient | None = None


def quota_retry_options(settings: Settings) -> ExponentialRetry:
    # Gateway hiccups are retried; 429 and auth failures go back to the caller untouched.
    return ExponentialRetry(
        attempts=settings.quota_fetch_max_retries + 1,
        start_timeout=0.5,
        statuses=set(_RETRYABLE_STATUSES),
        exceptions={aiohttp.ClientConnectionError},
    )


async def init_http_client() -> HttpClient:
    global _http_client
    if _http_client is not None:
        return _http_client

    settings = get_settings()
    connector = aiohttp.TCPConnector(
        limit=settings.http_client_connector_limit,
        limit_per_host=settings.http_client_connector_limit_per_host,
        keepalive_timeout=settings.http_client_keepalive_timeout_seconds,
    )
    # trust_env routes token and quota calls through HTTP_PROXY / HTTPS_PROXY / NO_PROXY.
    session = aiohttp.ClientSession(
        connector=connector,
        headers={"User-Agent": USER_AGENT},
        timeout=aiohttp.ClientTimeout(total=None),
        trust_env=True,
    )
    _http_client = HttpClient(
        session=session,
        retry_client=RetryClient(client_session=session, raise_for_status=False),
        quota_retry=quota_retry_options(settings),
    )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    client, _http_client = _http_client, None
    if client is not None:
        await client.retry_client.close()


def get_http_client() -> HttpClient:
    if _http_client is None:
        raise RuntimeError("HTTP client not initialized; call init_http_client() in the app lifespan")
    return _http_client
