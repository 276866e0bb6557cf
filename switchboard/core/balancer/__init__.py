from switchboard.core.balancer.logic import (
    classify_rate_limit,
    default_backoff_ms,
    is_rate_limit_status,
    parse_rate_limit_reason,
)
from switchboard.core.balancer.types import (
    AUTO_ACCOUNT_ID,
    PRIMARY_PROVIDER,
    ProviderKind,
    RateLimitDecision,
    RateLimitReason,
)

__all__ = [
    "AUTO_ACCOUNT_ID",
    "PRIMARY_PROVIDER",
    "ProviderKind",
    "RateLimitDecision",
    "RateLimitReason",
    "classify_rate_limit",
    "default_backoff_ms",
    "is_rate_limit_status",
    "parse_rate_limit_reason",
]
