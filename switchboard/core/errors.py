from __future__ import annotations

from dataclasses import dataclass
from typing import TypedDict


class OpenAIErrorDetail(TypedDict, total=False):
    message: str
    type: str
    code: str
    param: str
    reason: str
    resets_in_seconds: int | float


class OpenAIErrorEnvelope(TypedDict):
    error: OpenAIErrorDetail


class DashboardErrorDetail(TypedDict):
    code: str
    message: str


class DashboardErrorEnvelope(TypedDict):
    error: DashboardErrorDetail


def openai_error(code: str, message: str, error_type: str = "server_error") -> OpenAIErrorEnvelope:
    return {"error": {"message": message, "type": error_type, "code": code}}


def dashboard_error(code: str, message: str) -> DashboardErrorEnvelope:
    return {"error": {"code": code, "message": message}}


class UpstreamError(Exception):
    """Raised by provider clients when the upstream answers with a non-success status."""

    def __init__(
        self,
        provider: str,
        status: int,
        body: str = "",
        retry_after: str | None = None,
    ) -> None:
        super().__init__(f"{provider} upstream error status={status}")
        self.provider = provider
        self.status = status
        self.body = body
        self.retry_after = retry_after


class RefreshError(Exception):
    def __init__(self, message: str, *, status: int | None = None, is_permanent: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.is_permanent = is_permanent


class QuotaFetchError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class RoutingError(Exception):
    code = "routing_error"
    error_type = "server_error"
    status_code = 500

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.code


class ClientConfigError(RoutingError):
    code = "no_route"
    error_type = "invalid_request_error"
    status_code = 400


class UpstreamHardError(RoutingError):
    code = "upstream_error"
    error_type = "upstream_error"

    def __init__(self, error: UpstreamError, *, account_id: str | None = None) -> None:
        super().__init__(
            f"{error.provider} returned status {error.status}",
            reason=f"http_{error.status}",
        )
        self.status_code = error.status
        self.provider = error.provider
        self.body = error.body
        self.account_id = account_id


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    provider: str
    account_id: str
    model_id: str
    status: int | None
    reason: str


class AllAccountsExhausted(RoutingError):
    code = "all_accounts_exhausted"
    error_type = "rate_limit_error"
    status_code = 503

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        last_status: int | None = None,
        last_body: str | None = None,
        retry_after_ms: int | None = None,
        attempts: list[AttemptRecord] | None = None,
    ) -> None:
        super().__init__(message, reason=reason)
        self.last_status = last_status
        self.last_body = last_body
        self.retry_after_ms = retry_after_ms
        self.attempts = list(attempts or [])
        if last_status is not None:
            self.status_code = last_status


def routing_error_payload(exc: RoutingError) -> OpenAIErrorEnvelope:
    payload = openai_error(exc.code, exc.message, exc.error_type)
    payload["error"]["reason"] = exc.reason
    if isinstance(exc, AllAccountsExhausted) and exc.retry_after_ms is not None:
        payload["error"]["resets_in_seconds"] = round(exc.retry_after_ms / 1000, 3)
    return payload
