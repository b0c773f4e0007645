"""
Pairing code and transaction configuration.

Values are read once at import time from the environment.
"""

import os
from typing import Optional

# Pairing code shape and lifetime
PAIRING_CODE_TTL_HOURS = int(os.getenv("PAIRING_CODE_TTL_HOURS", "24"))
PAIRING_CODE_LENGTH = int(os.getenv("PAIRING_CODE_LENGTH", "8"))
PAIRING_CODE_MAX_GENERATION_ATTEMPTS = int(os.getenv("PAIRING_CODE_MAX_GENERATION_ATTEMPTS", "10"))
PAIRING_CODE_COLLISION_BACKOFF_SECONDS = float(os.getenv("PAIRING_CODE_COLLISION_BACKOFF_SECONDS", "0.05"))

# Restarts of the whole connect flow after a lost write race
CONNECT_MAX_ATTEMPTS = int(os.getenv("CONNECT_MAX_ATTEMPTS", "5"))

# Generic retry bound for run_in_transaction
TRANSACTION_MAX_ATTEMPTS = int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "5"))
TRANSACTION_BACKOFF_SECONDS = float(os.getenv("TRANSACTION_BACKOFF_SECONDS", "0.05"))


def code_range(length: int = PAIRING_CODE_LENGTH) -> tuple[int, int]:
    """Inclusive numeric range of codes with no leading zero."""
    return 10 ** (length - 1), 10 ** length - 1


def get_admin_secret() -> Optional[str]:
    """Shared secret for admin maintenance endpoints. Unset disables them."""
    return os.getenv("ADMIN_SECRET") or None
