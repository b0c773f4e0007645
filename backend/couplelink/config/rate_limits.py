"""
Rate limit policies for pairing operations.

Each policy is a fixed window: at most max_calls per account per
window_minutes. Policies are static; callers can never pick their own.
"""

import os
from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class RateLimitPolicy:
    max_calls: int
    window_minutes: int

    @property
    def window_seconds(self) -> int:
        return self.window_minutes * 60


RATE_LIMIT_POLICIES: Dict[str, RateLimitPolicy] = {
    "issue_code": RateLimitPolicy(max_calls=2, window_minutes=1),
    "validate_code": RateLimitPolicy(max_calls=10, window_minutes=1),
    "connect": RateLimitPolicy(max_calls=3, window_minutes=5),
    "disconnect": RateLimitPolicy(max_calls=5, window_minutes=5),
    "sync_subscription": RateLimitPolicy(max_calls=10, window_minutes=5),
    "refresh_entitlement": RateLimitPolicy(max_calls=10, window_minutes=5),
    "delete_account": RateLimitPolicy(max_calls=3, window_minutes=60),
}

# Windows older than this (by last_call_at) are swept
WINDOW_RETENTION_HOURS = int(os.getenv("RATE_LIMIT_WINDOW_RETENTION_HOURS", "24"))

# Batch size for the sweep (avoid long transactions)
SWEEP_BATCH_SIZE = int(os.getenv("RATE_LIMIT_SWEEP_BATCH_SIZE", "1000"))

# Dry-run mode (set to "true" to only count expired windows)
SWEEP_DRY_RUN = os.getenv("RATE_LIMIT_SWEEP_DRY_RUN", "false").lower() == "true"


def get_policy(operation: str) -> RateLimitPolicy:
    """
    Look up the policy for an operation.

    Raises:
        KeyError: operation has no policy (programming error)
    """
    return RATE_LIMIT_POLICIES[operation]


def is_rate_limit_enabled() -> bool:
    """Kill switch. Read per call so it can be flipped without a restart."""
    return os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"


def get_rate_limit_mode() -> str:
    """Either enforcing or log_only."""
    return os.getenv("RATE_LIMIT_MODE", "enforcing").lower()


def is_strict_mode() -> bool:
    """Strict limiters fail closed when the store is unreachable."""
    return os.getenv("RATE_LIMIT_STRICT", "false").lower() == "true"


def get_rate_limit_backend() -> str:
    """Either database (default) or redis."""
    return os.getenv("RATE_LIMIT_BACKEND", "database").lower()
