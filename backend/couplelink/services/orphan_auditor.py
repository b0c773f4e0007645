"""
OrphanAuditor: finds and repairs inherited entitlements that lost their basis.

An inherited entitlement is valid only while its source is the symmetrically
linked partner and that partner is a direct subscriber. Anything else is an
orphan:
- no-partner: the account has no partner at all
- partner-deleted: the partner account no longer exists
- source-mismatch: the source is not the linked partner, or the link is one-sided
- partner-lost-direct-subscription: the partner is no longer direct

diagnose() only reads. cleanup() runs the same detection and then repairs
each account in its own transaction, re-inspecting it first, so running it
twice is harmless.
"""

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from couplelink.database.transaction import run_in_transaction
from couplelink.models.account import Account, SubscriptionType
from couplelink.models.base import utcnow
from couplelink.models.pairing_code import DeactivationReason, PairingCode
from couplelink.platform.audit import AuditAction, ConnectionAuditEvent, record_connection_audit
from couplelink.services.subscription_inheritance import SubscriptionInheritanceResolver

logger = logging.getLogger(__name__)


class OrphanCategory(str, Enum):
    NO_PARTNER = "no-partner"
    PARTNER_DELETED = "partner-deleted"
    SOURCE_MISMATCH = "source-mismatch"
    PARTNER_LOST_DIRECT = "partner-lost-direct-subscription"


@dataclass
class OrphanViolation:
    account_id: str
    category: OrphanCategory
    partner_id: Optional[str] = None
    source_account_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "category": self.category.value,
            "partner_id": self.partner_id,
            "source_account_id": self.source_account_id,
        }


@dataclass
class OrphanReport:
    checked_count: int
    violations: List[OrphanViolation] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        counts = Counter(v.category.value for v in self.violations)
        return {category.value: counts.get(category.value, 0) for category in OrphanCategory}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_count": self.checked_count,
            "violation_count": len(self.violations),
            "violations": [v.to_dict() for v in self.violations],
            "summary": self.summary,
        }


@dataclass
class CleanupReport:
    checked_count: int
    cleaned_count: int
    cleaned_account_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_count": self.checked_count,
            "cleaned_count": self.cleaned_count,
            "cleaned_account_ids": list(self.cleaned_account_ids),
        }


@dataclass
class CodeCleanupReport:
    checked_count: int
    deactivated_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_count": self.checked_count,
            "deactivated_count": self.deactivated_count,
        }


def classify(account: Account, partner: Optional[Account]) -> Optional[OrphanCategory]:
    """Category of an inherited account's violation, or None if it is valid."""
    if not account.is_inherited:
        return None
    if not account.partner_id:
        return OrphanCategory.NO_PARTNER
    if partner is None:
        return OrphanCategory.PARTNER_DELETED
    if account.subscription_source_account_id != partner.id or partner.partner_id != account.id:
        return OrphanCategory.SOURCE_MISMATCH
    if not partner.is_direct:
        return OrphanCategory.PARTNER_LOST_DIRECT
    return None


class OrphanAuditor:
    """Detects and repairs orphaned inherited entitlements."""

    def __init__(self, session: Session, correlation_id: Optional[str] = None):
        self.session = session
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.resolver = SubscriptionInheritanceResolver(session, self.correlation_id)

    def _detect(self) -> Tuple[int, List[OrphanViolation]]:
        inherited = (
            self.session.query(Account)
            .filter(Account.subscription_type == SubscriptionType.INHERITED)
            .order_by(Account.id)
            .all()
        )
        partner_ids = {a.partner_id for a in inherited if a.partner_id}
        partners: Dict[str, Account] = {}
        if partner_ids:
            partners = {
                p.id: p
                for p in self.session.query(Account).filter(Account.id.in_(partner_ids)).all()
            }

        violations = []
        for account in inherited:
            category = classify(account, partners.get(account.partner_id))
            if category is not None:
                violations.append(OrphanViolation(
                    account_id=account.id,
                    category=category,
                    partner_id=account.partner_id,
                    source_account_id=account.subscription_source_account_id,
                ))
        return len(inherited), violations

    def diagnose(self) -> OrphanReport:
        """Read-only scan."""
        checked, violations = self._detect()
        report = OrphanReport(checked_count=checked, violations=violations)
        logger.info(
            "Orphan diagnosis complete",
            extra={
                "checked_count": checked,
                "summary": report.summary,
                "correlation_id": self.correlation_id,
            }
        )
        return report

    def cleanup(self) -> CleanupReport:
        """Detect orphans, then repair each in its own transaction."""
        checked, violations = self._detect()
        # End the read so each repair starts from fresh state
        self.session.rollback()

        cleaned: List[str] = []
        for violation in violations:
            repaired = run_in_transaction(
                self.session,
                lambda s, account_id=violation.account_id: self._repair(s, account_id),
                operation="subscription.orphan_repair",
                correlation_id=self.correlation_id,
            )
            if repaired:
                cleaned.append(violation.account_id)

        logger.info(
            "Orphan cleanup complete",
            extra={
                "checked_count": checked,
                "cleaned_count": len(cleaned),
                "correlation_id": self.correlation_id,
            }
        )
        return CleanupReport(checked_count=checked, cleaned_count=len(cleaned), cleaned_account_ids=cleaned)

    def _repair(self, session: Session, account_id: str) -> bool:
        account = session.get(Account, account_id)
        if account is None:
            return False
        partner = session.get(Account, account.partner_id) if account.partner_id else None
        category = classify(account, partner)
        if category is None:
            return False

        before = {account.id: account.entitlement_snapshot()}
        if partner is not None:
            before[partner.id] = partner.entitlement_snapshot()

        self.resolver.strip(account)
        if category == OrphanCategory.PARTNER_DELETED:
            account.partner_id = None
            account.partner_connected_at = None
            account.has_unseen_connection = False
        elif partner is not None and partner.partner_id == account.id:
            # Still a couple: restore whatever the pair is entitled to
            self.resolver.apply_pair(account, partner)

        after = {account.id: account.entitlement_snapshot()}
        if partner is not None:
            after[partner.id] = partner.entitlement_snapshot()

        record_connection_audit(session, ConnectionAuditEvent(
            action=AuditAction.SUBSCRIPTION_ORPHAN_REPAIRED,
            actor_account_id=None,
            counterpart_account_id=account.id,
            before_state=before,
            after_state=after,
            details={"category": category.value},
            correlation_id=self.correlation_id,
        ))
        logger.info(
            "Orphaned entitlement repaired",
            extra={
                "account_id": account.id,
                "category": category.value,
                "correlation_id": self.correlation_id,
            }
        )
        return True

    def cleanup_orphaned_codes(self) -> CodeCleanupReport:
        """Deactivate active codes whose owner account no longer exists."""
        active_codes = (
            self.session.query(PairingCode.code, PairingCode.owner_id)
            .filter(PairingCode.is_active.is_(True))
            .all()
        )
        owner_ids = {owner_id for _, owner_id in active_codes}
        existing = set()
        if owner_ids:
            existing = {
                row.id for row in self.session.query(Account.id).filter(Account.id.in_(owner_ids)).all()
            }
        orphaned = [code for code, owner_id in active_codes if owner_id not in existing]
        self.session.rollback()

        deactivated = 0
        if orphaned:
            now = utcnow()

            def work(session: Session) -> int:
                result = session.execute(
                    update(PairingCode)
                    .where(PairingCode.code.in_(orphaned), PairingCode.is_active.is_(True))
                    .values(
                        is_active=False,
                        connected_partner_id=None,
                        connected_at=None,
                        deactivated_at=now,
                        deactivation_reason=DeactivationReason.OWNER_NOT_FOUND.value,
                        version=PairingCode.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount

            deactivated = run_in_transaction(
                self.session,
                work,
                operation="pairing_code.orphan_cleanup",
                correlation_id=self.correlation_id,
            )

        logger.info(
            "Orphaned pairing code cleanup complete",
            extra={
                "checked_count": len(active_codes),
                "deactivated_count": deactivated,
                "correlation_id": self.correlation_id,
            }
        )
        return CodeCleanupReport(checked_count=len(active_codes), deactivated_count=deactivated)
