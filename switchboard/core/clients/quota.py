from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

import aiohttp

from switchboard.core.balancer.types import PRIMARY_PROVIDER
from switchboard.core.clients.http import get_http_client
from switchboard.core.config.settings import get_settings
from switchboard.core.errors import QuotaFetchError, UpstreamError
from switchboard.core.utils.time import parse_iso_ms

logger = logging.getLogger(__name__)

_CLIENT_METADATA = {
    "ideType": "IDE_UNSPECIFIED",
    "platform": "PLATFORM_UNSPECIFIED",
    "pluginType": "GEMINI",
}


@dataclass(frozen=True, slots=True)
class ModelQuota:
    remaining_fraction: float | None = None
    reset_time: str | None = None


@dataclass(slots=True)
class QuotaSnapshot:
    models: dict[str, ModelQuota] = field(default_factory=dict)
    project_id: str | None = None

    def has_available_quota(self) -> bool:
        return any((quota.remaining_fraction or 0.0) > 0 for quota in self.models.values())


def pick_reset_time(models: Mapping[str, ModelQuota], model_id: str | None = None) -> str | None:
    """Reset time for ``model_id`` when known, else the earliest parseable reset time."""
    if model_id:
        explicit = models.get(model_id)
        if explicit is not None and explicit.reset_time and parse_iso_ms(explicit.reset_time) is not None:
            return explicit.reset_time

    earliest: tuple[int, str] | None = None
    for quota in models.values():
        reset_ms = parse_iso_ms(quota.reset_time)
        if reset_ms is None or quota.reset_time is None:
            continue
        if earliest is None or reset_ms < earliest[0]:
            earliest = (reset_ms, quota.reset_time)
    return earliest[1] if earliest else None


async def fetch_available_models(
    access_token: str,
    project_id: str | None = None,
    *,
    session: aiohttp.ClientSession | None = None,
) -> QuotaSnapshot:
    payload: dict[str, object] = {}
    if project_id:
        payload["project"] = project_id
    data = await _post_internal("fetchAvailableModels", access_token, payload, session=session)
    return _parse_snapshot(data)


async def load_project_id(
    access_token: str,
    *,
    session: aiohttp.ClientSession | None = None,
) -> str | None:
    data = await _post_internal(
        "loadCodeAssist",
        access_token,
        {"metadata": _CLIENT_METADATA},
        session=session,
    )
    project = data.get("cloudaicompanionProject")
    if isinstance(project, str) and project:
        return project
    if isinstance(project, dict):
        project_id = project.get("id")
        if isinstance(project_id, str) and project_id:
            return project_id
    return None


async def _post_internal(
    method: str,
    access_token: str,
    payload: dict[str, object],
    *,
    session: aiohttp.ClientSession | None,
) -> dict:
    settings = get_settings()
    url = f"{settings.quota_base_url.rstrip('/')}:{method}"
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    timeout = aiohttp.ClientTimeout(total=settings.quota_fetch_timeout_seconds)
    try:
        if session is not None:
            request = session.post(url, json=payload, headers=headers, timeout=timeout)
        else:
            client = get_http_client()
            request = client.retry_client.post(
                url,
                json=payload,
                headers=headers,
                timeout=timeout,
                retry_options=client.quota_retry,
            )
        async with request as resp:
            body = await resp.text()
            if resp.status >= 400:
                raise UpstreamError(PRIMARY_PROVIDER.value, resp.status, body)
            try:
                data = await resp.json(content_type=None)
            except ValueError as exc:
                raise QuotaFetchError(resp.status, f"{method} returned invalid JSON") from exc
    except aiohttp.ClientError as exc:
        raise QuotaFetchError(0, f"{method} transport error: {exc}") from exc
    except TimeoutError as exc:
        raise QuotaFetchError(0, f"{method} timed out") from exc

    if not isinstance(data, dict):
        raise QuotaFetchError(200, f"{method} returned a non-object payload")
    return data


def _parse_snapshot(data: dict) -> QuotaSnapshot:
    models: dict[str, ModelQuota] = {}
    raw_models = data.get("models")
    if isinstance(raw_models, dict):
        for model_id, entry in raw_models.items():
            if isinstance(model_id, str) and isinstance(entry, dict):
                models[model_id] = _parse_model_quota(entry)
    project = data.get("project") or data.get("cloudaicompanionProject")
    return QuotaSnapshot(models=models, project_id=project if isinstance(project, str) and project else None)


def _parse_model_quota(entry: dict) -> ModelQuota:
    quota = entry.get("quotaInfo")
    source = quota if isinstance(quota, dict) else entry
    fraction = source.get("remainingFraction")
    reset_time = source.get("resetTime")
    return ModelQuota(
        remaining_fraction=float(fraction) if isinstance(fraction, (int, float)) else None,
        reset_time=reset_time if isinstance(reset_time, str) else None,
    )
