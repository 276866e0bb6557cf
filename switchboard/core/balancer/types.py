from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ProviderKind(str, Enum):
    ANTIGRAVITY = "antigravity"
    CODEX = "codex"
    COPILOT = "copilot"


PRIMARY_PROVIDER = ProviderKind.ANTIGRAVITY

# Flow entries may name this instead of a concrete account; only the primary provider resolves it.
AUTO_ACCOUNT_ID = "auto"


class RateLimitReason(str, Enum):
    QUOTA_EXHAUSTED = "quota_exhausted"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    MODEL_CAPACITY_EXHAUSTED = "model_capacity_exhausted"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    reason: RateLimitReason
    backoff_ms: int
