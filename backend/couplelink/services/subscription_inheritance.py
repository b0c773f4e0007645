"""
SubscriptionInheritanceResolver: the only writer of entitlement columns.

Rules:
- A direct subscriber shares premium access with its linked partner, who
  becomes `inherited` with the subscriber as source.
- Inheritance never chains: an inherited account is never a source.
- A direct source has at most one beneficiary. A grant that would create a
  second one is skipped and reported as blocked.
- Partner-state changes never touch a direct entitlement; only
  apply_direct_status (entitlement proof results) does.

Callers run these methods inside their own transaction and are responsible
for loading both accounts of a pair before calling apply_pair.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from couplelink.models.account import Account, SubscriptionType
from couplelink.models.base import utcnow

logger = logging.getLogger(__name__)

BLOCKED_SOURCE_ALREADY_SHARED = "source_already_shared"


@dataclass
class PairDerivation:
    """What apply_pair changed."""
    changed_account_ids: List[str] = field(default_factory=list)
    granted_to: Optional[str] = None
    stripped: List[str] = field(default_factory=list)
    inheritance_blocked: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.changed_account_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed_account_ids": list(self.changed_account_ids),
            "granted_to": self.granted_to,
            "stripped": list(self.stripped),
            "inheritance_blocked": self.inheritance_blocked,
        }


def shares_subscription(a: Account, b: Account) -> bool:
    """True when one side of the pair inherits from the other."""
    return (
        (a.is_inherited and a.subscription_source_account_id == b.id)
        or (b.is_inherited and b.subscription_source_account_id == a.id)
    )


class SubscriptionInheritanceResolver:
    """Derives and applies entitlement state for accounts and pairs."""

    def __init__(self, session: Session, correlation_id: Optional[str] = None):
        self.session = session
        self.correlation_id = correlation_id or str(uuid.uuid4())

    # =========================================================================
    # Primitive transitions
    # =========================================================================

    def grant(self, beneficiary: Account, source: Account, now: Optional[datetime] = None) -> bool:
        """
        Make beneficiary inherit from source.

        Returns:
            False when the grant is not allowed (source not direct, chaining,
            or source already shared with someone else)
        """
        if not source.is_direct or beneficiary.is_direct or beneficiary.id == source.id:
            return False
        if beneficiary.is_inherited and beneficiary.subscription_source_account_id == source.id:
            return True
        if self.has_other_beneficiary(source.id, beneficiary.id):
            logger.info(
                "Inheritance grant blocked",
                extra={
                    "account_id": beneficiary.id,
                    "partner_id": source.id,
                    "reason": BLOCKED_SOURCE_ALREADY_SHARED,
                    "correlation_id": self.correlation_id,
                }
            )
            return False

        beneficiary.subscription_type = SubscriptionType.INHERITED
        beneficiary.is_subscribed = True
        beneficiary.subscription_source_account_id = source.id
        beneficiary.subscription_source_timestamp = now or utcnow()
        return True

    def strip(self, account: Account) -> bool:
        """Remove an inherited entitlement. Direct entitlements are untouched."""
        if not account.is_inherited:
            return False
        account.subscription_type = SubscriptionType.NONE
        account.is_subscribed = False
        account.subscription_source_account_id = None
        account.subscription_source_timestamp = None
        return True

    def has_other_beneficiary(self, source_id: str, beneficiary_id: str) -> bool:
        return self.session.query(Account.id).filter(
            Account.subscription_type == SubscriptionType.INHERITED,
            Account.subscription_source_account_id == source_id,
            Account.id != beneficiary_id,
        ).first() is not None

    # =========================================================================
    # Pair derivation
    # =========================================================================

    def apply_pair(self, a: Account, b: Account, now: Optional[datetime] = None) -> PairDerivation:
        """
        Re-derive entitlement for a linked pair.

        If either side is direct the other (unless also direct) inherits from
        it; if neither is direct both end up without an entitlement.
        """
        now = now or utcnow()
        derivation = PairDerivation()

        for account, partner in ((a, b), (b, a)):
            if account.is_direct:
                continue
            if partner.is_direct:
                already = account.is_inherited and account.subscription_source_account_id == partner.id
                if already:
                    continue
                if self.grant(account, partner, now):
                    derivation.granted_to = account.id
                    derivation.changed_account_ids.append(account.id)
                else:
                    derivation.inheritance_blocked = BLOCKED_SOURCE_ALREADY_SHARED
                    if self.strip(account):
                        derivation.stripped.append(account.id)
                        derivation.changed_account_ids.append(account.id)
            elif self.strip(account):
                derivation.stripped.append(account.id)
                derivation.changed_account_ids.append(account.id)

        return derivation

    def release_on_unlink(self, account: Account, removed_partner_id: str) -> bool:
        """Strip an entitlement inherited from an account that is no longer the partner."""
        if account.is_inherited and account.subscription_source_account_id == removed_partner_id:
            return self.strip(account)
        return False

    # =========================================================================
    # Direct entitlement
    # =========================================================================

    def apply_direct_status(self, account: Account, is_valid: bool) -> bool:
        """
        Apply the outcome of an entitlement proof check.

        A valid proof makes the account direct (replacing any inherited
        entitlement). An invalid proof drops a direct entitlement; an
        inherited one is left to the pair derivation.

        Returns:
            True if the account changed
        """
        if is_valid:
            if account.is_direct:
                return False
            account.subscription_type = SubscriptionType.DIRECT
            account.is_subscribed = True
            account.subscription_source_account_id = None
            account.subscription_source_timestamp = None
            return True

        if not account.is_direct:
            return False
        account.subscription_type = SubscriptionType.NONE
        account.is_subscribed = False
        return True
