"""Configuration modules."""

from couplelink.config.pairing import (
    CONNECT_MAX_ATTEMPTS,
    PAIRING_CODE_TTL_HOURS,
    TRANSACTION_MAX_ATTEMPTS,
    get_admin_secret,
)
from couplelink.config.rate_limits import RATE_LIMIT_POLICIES, RateLimitPolicy, get_policy

__all__ = [
    "CONNECT_MAX_ATTEMPTS",
    "PAIRING_CODE_TTL_HOURS",
    "TRANSACTION_MAX_ATTEMPTS",
    "get_admin_secret",
    "RATE_LIMIT_POLICIES",
    "RateLimitPolicy",
    "get_policy",
]
