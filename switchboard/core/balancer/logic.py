from __future__ import annotations

import json
from typing import Final

from switchboard.core.balancer.types import RateLimitDecision, RateLimitReason
from switchboard.core.utils.retry import parse_retry_delay

_DETAIL_REASONS: Final[dict[str, RateLimitReason]] = {
    "QUOTA_EXHAUSTED": RateLimitReason.QUOTA_EXHAUSTED,
    "RATE_LIMIT_EXCEEDED": RateLimitReason.RATE_LIMIT_EXCEEDED,
    "MODEL_CAPACITY_EXHAUSTED": RateLimitReason.MODEL_CAPACITY_EXHAUSTED,
}

_RATE_LIMIT_CUES: Final[tuple[str, ...]] = ("per minute", "rate limit", "too many requests")
_CAPACITY_CUES: Final[tuple[str, ...]] = ("model_capacity", "capacity")
_EXHAUSTION_CUES: Final[tuple[str, ...]] = ("exhausted", "quota")

# Escalation steps for consecutive quota failures; the last step repeats.
QUOTA_BACKOFF_STEPS_MS: Final[tuple[int, ...]] = (
    60_000,
    5 * 60_000,
    30 * 60_000,
    2 * 60 * 60_000,
)
RATE_LIMIT_BACKOFF_MS: Final[int] = 30_000
CAPACITY_BACKOFF_MS: Final[int] = 15_000
SERVER_ERROR_BACKOFF_MS: Final[int] = 20_000
UNKNOWN_BACKOFF_MS: Final[int] = 60_000
BARE_429_BACKOFF_MS: Final[int] = 5_000
RETRY_DELAY_PADDING_MS: Final[int] = 500
MIN_RETRY_DELAY_BACKOFF_MS: Final[int] = 2_000


def parse_rate_limit_reason(status_code: int, body: str | None) -> RateLimitReason:
    if status_code != 429:
        if status_code >= 500:
            return RateLimitReason.SERVER_ERROR
        return RateLimitReason.UNKNOWN

    text = body or ""
    trimmed = text.strip()
    if trimmed.startswith(("{", "[")):
        try:
            payload = json.loads(trimmed)
        except ValueError:
            payload = None
        from_json = _reason_from_payload(payload)
        if from_json is not None:
            return from_json

    lower = text.lower()
    if any(cue in lower for cue in _RATE_LIMIT_CUES):
        return RateLimitReason.RATE_LIMIT_EXCEEDED
    if any(cue in lower for cue in _CAPACITY_CUES):
        return RateLimitReason.MODEL_CAPACITY_EXHAUSTED
    if any(cue in lower for cue in _EXHAUSTION_CUES):
        return RateLimitReason.QUOTA_EXHAUSTED
    return RateLimitReason.UNKNOWN


def _reason_from_payload(payload: object) -> RateLimitReason | None:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    details = error.get("details")
    if isinstance(details, list):
        for detail in details:
            if not isinstance(detail, dict):
                continue
            reason = detail.get("reason")
            if isinstance(reason, str) and reason in _DETAIL_REASONS:
                return _DETAIL_REASONS[reason]
    message = error.get("message")
    if isinstance(message, str):
        lower = message.lower()
        if "per minute" in lower or "rate limit" in lower:
            return RateLimitReason.RATE_LIMIT_EXCEEDED
    return None


def default_backoff_ms(reason: RateLimitReason, consecutive_failures: int = 1) -> int:
    match reason:
        case RateLimitReason.QUOTA_EXHAUSTED:
            step = min(max(consecutive_failures, 1), len(QUOTA_BACKOFF_STEPS_MS)) - 1
            return QUOTA_BACKOFF_STEPS_MS[step]
        case RateLimitReason.RATE_LIMIT_EXCEEDED:
            return RATE_LIMIT_BACKOFF_MS
        case RateLimitReason.MODEL_CAPACITY_EXHAUSTED:
            return CAPACITY_BACKOFF_MS
        case RateLimitReason.SERVER_ERROR:
            return SERVER_ERROR_BACKOFF_MS
        case _:
            return UNKNOWN_BACKOFF_MS


def classify_rate_limit(
    status_code: int,
    body: str | None,
    retry_after: str | None = None,
    consecutive_failures: int = 1,
) -> RateLimitDecision:
    """Map an upstream failure to a normalized reason and a backoff duration.

    ``consecutive_failures`` counts the failure being classified, so the first
    failure of an account is ``1``.
    """
    reason = parse_rate_limit_reason(status_code, body)
    retry_ms = parse_retry_delay(body, retry_after)
    if retry_ms is not None:
        return RateLimitDecision(
            reason=reason,
            backoff_ms=max(retry_ms + RETRY_DELAY_PADDING_MS, MIN_RETRY_DELAY_BACKOFF_MS),
        )
    if status_code == 429 and reason == RateLimitReason.UNKNOWN:
        # Assume a short-lived rate limit rather than spending a quota lookup to find out.
        return RateLimitDecision(reason=RateLimitReason.RATE_LIMIT_EXCEEDED, backoff_ms=BARE_429_BACKOFF_MS)
    return RateLimitDecision(reason=reason, backoff_ms=default_backoff_ms(reason, consecutive_failures))


def is_rate_limit_status(status_code: int) -> bool:
    """Statuses that rotate to the next candidate instead of failing the request."""
    return status_code == 429 or status_code >= 500
