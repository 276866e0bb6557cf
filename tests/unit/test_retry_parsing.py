from __future__ import annotations

import json

import pytest

from switchboard.core.utils.retry import parse_duration_ms, parse_retry_after, parse_retry_delay

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("value", "expected"),
    [("1.5s", 1_500), ("2m5s", 125_000), ("500ms", 500), ("1h", 3_600_000), ("abc", None), ("", None), ("5", None)],
)
def test_parse_duration_ms(value, expected):
    assert parse_duration_ms(value) == expected


def test_parse_retry_after_seconds():
    assert parse_retry_after("7") == 7_000
    assert parse_retry_after("0.25") == 250
    assert parse_retry_after("-1") is None
    assert parse_retry_after("") is None
    assert parse_retry_after(None) is None


def test_parse_retry_after_http_date():
    target = 1_445_412_480.0  # Wed, 21 Oct 2015 07:28:00 GMT
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", now=target - 30) == 30_000
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", now=target + 30) == 0
    assert parse_retry_after("not a date") is None


def test_header_takes_precedence_over_body():
    body = json.dumps({"error": {"details": [{"retryDelay": "10s"}]}})
    assert parse_retry_delay(body, "2") == 2_000
    assert parse_retry_delay(body) == 10_000


def test_quota_reset_delay_metadata():
    body = json.dumps({"error": {"details": [{"reason": "QUOTA_EXHAUSTED", "metadata": {"quotaResetDelay": "1h"}}]}})
    assert parse_retry_delay(body) == 3_600_000


def test_message_hints():
    assert parse_retry_delay("Please try again in 20 seconds") == 20_000
    assert parse_retry_delay("Please retry in 1m30s") == 90_000
    body = json.dumps({"error": {"message": "Quota resets in 45s"}})
    assert parse_retry_delay(body) == 45_000


def test_no_hint():
    assert parse_retry_delay(None) is None
    assert parse_retry_delay("") is None
    assert parse_retry_delay("{not json") is None
    assert parse_retry_delay(json.dumps({"error": {"message": "quota exhausted"}})) is None
