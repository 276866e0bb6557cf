from __future__ import annotations

from typing import Final

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

_PROM_CONTENT_TYPE: Final[str] = "text/plain; version=0.0.4; charset=utf-8"


class Metrics:
    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry(auto_describe=True)

        self._route_requests_total = Counter(
            "switchboard_route_requests_total",
            "Routed completion requests by resolution mode and final outcome.",
            labelnames=("mode", "outcome"),
            registry=self._registry,
        )
        self._route_attempts_total = Counter(
            "switchboard_route_attempts_total",
            "Upstream attempts made while walking a routing chain.",
            labelnames=("provider", "outcome"),
            registry=self._registry,
        )
        self._route_attempts_per_request = Histogram(
            "switchboard_route_attempts_per_request",
            "Number of upstream attempts needed per routed request.",
            buckets=(1, 2, 3, 4, 6, 8, 12, 16),
            registry=self._registry,
        )
        self._rate_limit_marks_total = Counter(
            "switchboard_rate_limit_marks_total",
            "Accounts placed into backoff, by provider and normalized reason.",
            labelnames=("provider", "reason"),
            registry=self._registry,
        )
        self._account_select_total = Counter(
            "switchboard_account_select_total",
            "Primary provider account selection outcomes.",
            labelnames=("outcome",),
            registry=self._registry,
        )
        self._optimistic_resets_total = Counter(
            "switchboard_optimistic_resets_total",
            "Times every rate-limit flag was cleared because remaining waits were implausibly short.",
            registry=self._registry,
        )
        self._quota_validations_total = Counter(
            "switchboard_quota_validations_total",
            "Live quota checks performed while every account was rate limited.",
            labelnames=("outcome",),
            registry=self._registry,
        )
        self._token_refresh_total = Counter(
            "switchboard_token_refresh_total",
            "Access token refresh attempts.",
            labelnames=("outcome",),
            registry=self._registry,
        )

    @property
    def content_type(self) -> str:
        return _PROM_CONTENT_TYPE

    def render(self) -> bytes:
        return generate_latest(self._registry)

    def observe_route_request(self, *, mode: str, outcome: str, attempts: int) -> None:
        self._route_requests_total.labels(mode=mode or "unknown", outcome=outcome or "unknown").inc()
        if attempts > 0:
            self._route_attempts_per_request.observe(float(attempts))

    def observe_route_attempt(self, *, provider: str, outcome: str) -> None:
        self._route_attempts_total.labels(provider=provider or "unknown", outcome=outcome or "unknown").inc()

    def observe_rate_limit_mark(self, *, provider: str, reason: str) -> None:
        self._rate_limit_marks_total.labels(provider=provider or "unknown", reason=reason or "unknown").inc()

    def observe_account_select(self, *, outcome: str) -> None:
        self._account_select_total.labels(outcome=outcome or "unknown").inc()

    def inc_optimistic_reset(self) -> None:
        self._optimistic_resets_total.inc()

    def observe_quota_validation(self, *, outcome: str) -> None:
        self._quota_validations_total.labels(outcome=outcome or "unknown").inc()

    def observe_token_refresh(self, *, outcome: str) -> None:
        self._token_refresh_total.labels(outcome=outcome or "unknown").inc()
