from __future__ import annotations

from pydantic import Field

from switchboard.core.balancer.types import ProviderKind
from switchboard.core.utils.time import utcnow_iso
from switchboard.modules.shared.schemas import DashboardModel


class ProviderAccount(DashboardModel):
    id: str
    provider: ProviderKind
    email: str | None = None
    login: str | None = None
    label: str | None = None
    access_token: str = ""
    refresh_token: str = ""
    # Epoch milliseconds; 0 means the expiry is unknown and the token is never refreshed proactively.
    expires_at: int = 0
    project_id: str | None = None
    created_at: str = Field(default_factory=utcnow_iso)
    disabled: bool = False

    # Runtime-only state, never written to disk.
    rate_limited_until: int | None = Field(default=None, exclude=True)
    consecutive_failures: int = Field(default=0, exclude=True)
    in_flight: bool = Field(default=False, exclude=True)

    def display_name(self) -> str:
        if self.provider == ProviderKind.ANTIGRAVITY:
            return self.email or self.login or self.label or self.id
        return self.login or self.email or self.label or self.id

    def reset_runtime(self) -> None:
        self.rate_limited_until = None
        self.consecutive_failures = 0
        self.in_flight = False


class AccountsDocument(DashboardModel):
    accounts: list[ProviderAccount] = Field(default_factory=list)
