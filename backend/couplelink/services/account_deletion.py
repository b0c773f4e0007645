"""
AccountDeletionCoordinator: removes an account without leaving dangling
partner links or inherited entitlements behind.

Deletion runs in two phases:
1. One transaction: release every pairing code the account owns or consumed,
   unlink and revoke every account that points at it, drop its rate limit
   windows, write the audit record and delete the account row.
2. After that commits: remove the authentication identity.

If phase 1 fails nothing is deleted. If phase 2 fails the data is already
gone and a retry re-runs the (now empty) cascade and the identity removal.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from couplelink.database.transaction import run_in_transaction
from couplelink.integrations.identity_client import IdentityProvider, IdentityProviderError
from couplelink.models.account import Account
from couplelink.models.base import utcnow
from couplelink.models.pairing_code import DeactivationReason, PairingCode
from couplelink.models.rate_limit_window import RateLimitWindow
from couplelink.platform.audit import AuditAction, ConnectionAuditEvent, record_connection_audit
from couplelink.platform.errors import ConcurrentModificationError, InternalError
from couplelink.services.partner_events import (
    PartnerEvent,
    PartnerEventPublisher,
    PartnerEventType,
    publish_safely,
)
from couplelink.services.subscription_inheritance import SubscriptionInheritanceResolver

logger = logging.getLogger(__name__)


@dataclass
class DeletionResult:
    ok: bool
    account_id: str
    account_existed: bool
    unlinked_account_ids: List[str] = field(default_factory=list)
    revoked_account_ids: List[str] = field(default_factory=list)
    released_codes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "account_id": self.account_id,
            "account_existed": self.account_existed,
            "unlinked_account_ids": list(self.unlinked_account_ids),
            "revoked_account_ids": list(self.revoked_account_ids),
            "released_codes": list(self.released_codes),
        }


class AccountDeletionCoordinator:
    """Coordinates the data cascade and identity removal for one account."""

    def __init__(
        self,
        session: Session,
        identity_provider: IdentityProvider,
        publisher: Optional[PartnerEventPublisher] = None,
        correlation_id: Optional[str] = None,
    ):
        self.session = session
        self.identity_provider = identity_provider
        self.publisher = publisher
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.resolver = SubscriptionInheritanceResolver(session, self.correlation_id)

    def delete_account(self, account_id: str) -> DeletionResult:
        """
        Delete account_id and everything that references it.

        Raises:
            InternalError: the cascade or the identity removal failed
        """
        try:
            result = run_in_transaction(
                self.session,
                lambda s: self._cascade(s, account_id),
                operation="account.delete",
                correlation_id=self.correlation_id,
            )
        except ConcurrentModificationError as e:
            logger.error(
                "Account deletion cascade kept conflicting",
                extra={"account_id": account_id, "correlation_id": self.correlation_id},
            )
            raise InternalError("Failed to delete account data") from e

        logger.info(
            "Account data deleted",
            extra={
                "account_id": account_id,
                "account_existed": result.account_existed,
                "unlinked": result.unlinked_account_ids,
                "revoked": result.revoked_account_ids,
                "correlation_id": self.correlation_id,
            }
        )

        for partner_id in result.unlinked_account_ids:
            publish_safely(self.publisher, PartnerEvent(
                event_type=PartnerEventType.PARTNER_ACCOUNT_DELETED,
                recipient_id=partner_id,
                partner_id=account_id,
                payload={"entitlement_revoked": partner_id in result.revoked_account_ids},
                correlation_id=self.correlation_id,
            ))

        try:
            self.identity_provider.delete_identity(account_id)
        except IdentityProviderError as e:
            logger.exception(
                "Failed to delete authentication identity",
                extra={"account_id": account_id, "correlation_id": self.correlation_id},
            )
            raise InternalError(
                "Failed to delete authentication identity",
                details={"correlation_id": self.correlation_id},
            ) from e

        return result

    def _cascade(self, session: Session, account_id: str) -> DeletionResult:
        now = utcnow()
        account = session.get(Account, account_id)

        owned_codes = session.query(PairingCode).filter(PairingCode.owner_id == account_id).all()
        consumed_codes = (
            session.query(PairingCode)
            .filter(PairingCode.connected_partner_id == account_id)
            .all()
        )

        referencing = (
            session.query(Account)
            .filter(
                Account.id != account_id,
                or_(
                    Account.partner_id == account_id,
                    Account.subscription_source_account_id == account_id,
                ),
            )
            .all()
        )
        affected: Dict[str, Account] = {a.id: a for a in referencing}

        related_ids = {c.connected_partner_id for c in owned_codes if c.connected_partner_id}
        if account is not None and account.partner_id:
            related_ids.add(account.partner_id)
        missing = related_ids - set(affected) - {account_id}
        if missing:
            for other in session.query(Account).filter(Account.id.in_(missing)).all():
                affected[other.id] = other

        before = {a.id: a.entitlement_snapshot() for a in affected.values()}
        if account is not None:
            before[account.id] = account.entitlement_snapshot()

        unlinked: List[str] = []
        revoked: List[str] = []
        for other in affected.values():
            if self.resolver.release_on_unlink(other, account_id):
                revoked.append(other.id)
            if other.partner_id == account_id:
                other.partner_id = None
                other.partner_connected_at = None
                other.has_unseen_connection = False
                unlinked.append(other.id)

        released: List[str] = []
        for code in owned_codes:
            if code.is_active or code.connected_partner_id:
                code.deactivate(DeactivationReason.OWNER_DELETED, now)
                released.append(code.code)
        for code in consumed_codes:
            if code.owner_id == account_id:
                continue
            code.deactivate(DeactivationReason.CONSUMED, now)
            released.append(code.code)

        windows_deleted = (
            session.query(RateLimitWindow)
            .filter(RateLimitWindow.account_id == account_id)
            .delete(synchronize_session=False)
        )

        record_connection_audit(session, ConnectionAuditEvent(
            action=AuditAction.ACCOUNT_DELETED,
            actor_account_id=account_id,
            counterpart_account_id=account.partner_id if account is not None else None,
            before_state=before,
            after_state={a.id: a.entitlement_snapshot() for a in affected.values()},
            details={
                "account_existed": account is not None,
                "unlinked_account_ids": sorted(unlinked),
                "revoked_account_ids": sorted(revoked),
                "released_codes": released,
                "rate_limit_windows_deleted": windows_deleted,
            },
            correlation_id=self.correlation_id,
        ))

        if account is not None:
            session.delete(account)

        return DeletionResult(
            ok=True,
            account_id=account_id,
            account_existed=account is not None,
            unlinked_account_ids=sorted(unlinked),
            revoked_account_ids=sorted(revoked),
            released_codes=released,
        )
