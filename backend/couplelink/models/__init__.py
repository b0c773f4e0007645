"""ORM models. Importing this package registers every table on Base.metadata."""

from couplelink.models.account import Account, SubscriptionType
from couplelink.models.pairing_code import DeactivationReason, PairingCode
from couplelink.models.rate_limit_window import RateLimitWindow
from couplelink.platform.audit import ConnectionAuditRecord

__all__ = [
    "Account",
    "SubscriptionType",
    "PairingCode",
    "DeactivationReason",
    "RateLimitWindow",
    "ConnectionAuditRecord",
]
