from __future__ import annotations

import json
import re
import time
from email.utils import parsedate_to_datetime
from typing import Final

_DURATION_PART_RE: Final[re.Pattern[str]] = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_RE: Final[re.Pattern[str]] = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|h|m|s))+$")
_MESSAGE_DELAY_RE: Final[re.Pattern[str]] = re.compile(
    r"(?:try again|retry|reset|resets)\s+(?:in|after)\s+((?:\d+(?:\.\d+)?(?:ms|h|m|s))+)",
    re.IGNORECASE,
)
_MESSAGE_SECONDS_RE: Final[re.Pattern[str]] = re.compile(
    r"(?:try again|retry)\s+(?:in|after)\s+(\d+(?:\.\d+)?)\s*(?:seconds?|secs?)\b",
    re.IGNORECASE,
)

_UNIT_MS: Final[dict[str, float]] = {"ms": 1.0, "s": 1000.0, "m": 60_000.0, "h": 3_600_000.0}


def parse_duration_ms(value: str) -> int | None:
    """Parse a Go-style duration such as ``"1.5s"``, ``"2m5s"`` or ``"500ms"``."""
    text = value.strip().lower()
    if not text or not _DURATION_RE.match(text):
        return None
    total = 0.0
    for amount, unit in _DURATION_PART_RE.findall(text):
        total += float(amount) * _UNIT_MS[unit]
    return int(round(total))


def parse_retry_after(value: str | None, *, now: float | None = None) -> int | None:
    """Parse a Retry-After header (delta seconds or HTTP date) into milliseconds."""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        if seconds < 0:
            return None
        return int(round(seconds * 1000))
    try:
        target = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if target is None:
        return None
    current = now if now is not None else time.time()
    return max(0, int(round((target.timestamp() - current) * 1000)))


def parse_retry_delay(body: str | None, retry_after: str | None = None) -> int | None:
    """Extract an explicit retry delay in milliseconds from a header or an error body.

    The header wins when present. Body hints are read from Google RPC ``RetryInfo``
    details, ``metadata.quotaResetDelay`` and free-form "try again in ..." messages.
    """
    header_ms = parse_retry_after(retry_after)
    if header_ms is not None:
        return header_ms
    if not body:
        return None

    payload = _load_json(body)
    if isinstance(payload, dict):
        from_json = _retry_delay_from_payload(payload)
        if from_json is not None:
            return from_json

    return _retry_delay_from_message(body)


def _load_json(body: str) -> object:
    trimmed = body.strip()
    if not trimmed or trimmed[0] not in "{[":
        return None
    try:
        return json.loads(trimmed)
    except ValueError:
        return None


def _retry_delay_from_payload(payload: dict) -> int | None:
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    details = error.get("details")
    if isinstance(details, list):
        for detail in details:
            if not isinstance(detail, dict):
                continue
            retry_delay = detail.get("retryDelay")
            if isinstance(retry_delay, str):
                parsed = parse_duration_ms(retry_delay)
                if parsed is not None:
                    return parsed
            metadata = detail.get("metadata")
            if isinstance(metadata, dict):
                reset_delay = metadata.get("quotaResetDelay")
                if isinstance(reset_delay, str):
                    parsed = parse_duration_ms(reset_delay)
                    if parsed is not None:
                        return parsed
    message = error.get("message")
    if isinstance(message, str):
        return _retry_delay_from_message(message)
    return None


def _retry_delay_from_message(message: str) -> int | None:
    match = _MESSAGE_DELAY_RE.search(message)
    if match:
        return parse_duration_ms(match.group(1))
    match = _MESSAGE_SECONDS_RE.search(message)
    if match:
        return int(round(float(match.group(1)) * 1000))
    return None
