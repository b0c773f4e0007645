"""
ConnectionTransactionEngine: links and unlinks couples.

Handles:
- Connecting a requester to the owner of a pairing code
- Disconnecting a couple from either side
- Re-deriving shared entitlement on demand (sync)
- Applying a fresh entitlement proof and propagating it to the partner
- Partner summary and the unseen-connection flag

Every mutation is one transaction through run_in_transaction and writes an
audit record in that same transaction. Partner events are published only
after the commit.

Connect is optimistic: the code is validated, then a single-attempt
transaction re-reads and re-checks everything. If a concurrent writer wins
(version mismatch on the code or an account), the attempt is rolled back
and the whole flow restarts from validation, where a loser sees
`already-used`.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from couplelink.config.pairing import CONNECT_MAX_ATTEMPTS
from couplelink.database.transaction import run_in_transaction
from couplelink.integrations.entitlement_client import (
    EntitlementVerificationError,
    EntitlementVerifier,
)
from couplelink.models.account import Account
from couplelink.models.base import utcnow
from couplelink.models.pairing_code import DeactivationReason, PairingCode
from couplelink.platform.audit import AuditAction, ConnectionAuditEvent, record_connection_audit
from couplelink.platform.errors import (
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
    ServiceUnavailableError,
)
from couplelink.services.pairing_code_registry import (
    PairingCodeRegistry,
    evaluate_code,
    rejection_error,
)
from couplelink.services.partner_events import (
    PartnerEvent,
    PartnerEventPublisher,
    PartnerEventType,
    publish_safely,
)
from couplelink.services.subscription_inheritance import (
    SubscriptionInheritanceResolver,
    shares_subscription,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Results
# =============================================================================

@dataclass
class ConnectionResult:
    partner_id: str
    partner_name: Optional[str]
    subscription_inherited: bool
    already_connected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partner_id": self.partner_id,
            "partner_name": self.partner_name,
            "subscription_inherited": self.subscription_inherited,
            "already_connected": self.already_connected,
        }


@dataclass
class DisconnectResult:
    ok: bool
    partner_id: str
    requester_entitlement_revoked: bool
    partner_entitlement_revoked: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "partner_id": self.partner_id,
            "requester_entitlement_revoked": self.requester_entitlement_revoked,
            "partner_entitlement_revoked": self.partner_entitlement_revoked,
        }


@dataclass
class SyncResult:
    subscription_inherited: bool
    changed_account_ids: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_inherited": self.subscription_inherited,
            "changed_account_ids": list(self.changed_account_ids),
        }


@dataclass
class EntitlementRefreshResult:
    account_id: str
    is_subscribed: bool
    subscription_type: str
    changed_account_ids: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "is_subscribed": self.is_subscribed,
            "subscription_type": self.subscription_type,
            "changed_account_ids": list(self.changed_account_ids),
        }


@dataclass
class PartnerSummary:
    partner_id: str
    display_name: Optional[str]
    is_subscribed: bool
    subscription_type: str
    connected_at: Optional[datetime]
    has_unseen_connection: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partner_id": self.partner_id,
            "display_name": self.display_name,
            "is_subscribed": self.is_subscribed,
            "subscription_type": self.subscription_type,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "has_unseen_connection": self.has_unseen_connection,
        }


# =============================================================================
# Service
# =============================================================================

class ConnectionTransactionEngine:
    """Service for couple link lifecycle and shared entitlement."""

    def __init__(
        self,
        session: Session,
        correlation_id: Optional[str] = None,
        publisher: Optional[PartnerEventPublisher] = None,
        entitlement_verifier: Optional[EntitlementVerifier] = None,
        registry: Optional[PairingCodeRegistry] = None,
        max_connect_attempts: int = CONNECT_MAX_ATTEMPTS,
    ):
        self.session = session
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.publisher = publisher
        self.entitlement_verifier = entitlement_verifier
        self.registry = registry or PairingCodeRegistry(session, self.correlation_id)
        self.resolver = SubscriptionInheritanceResolver(session, self.correlation_id)
        self.max_connect_attempts = max_connect_attempts

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load_accounts(self, session: Session, account_ids: Iterable[str]) -> Dict[str, Account]:
        """Load accounts by id, row-locked in id order where the database supports it."""
        ids = sorted({a for a in account_ids if a})
        if not ids:
            return {}
        rows = (
            session.query(Account)
            .filter(Account.id.in_(ids))
            .order_by(Account.id)
            .with_for_update()
            .all()
        )
        return {row.id: row for row in rows}

    def _require_account(self, accounts: Dict[str, Account], account_id: str) -> Account:
        account = accounts.get(account_id)
        if account is None:
            raise NotFoundError("Account", account_id)
        return account

    def _publish(self, event_type: PartnerEventType, recipient_id: str, partner_id: str, **payload) -> None:
        publish_safely(
            self.publisher,
            PartnerEvent(
                event_type=event_type,
                recipient_id=recipient_id,
                partner_id=partner_id,
                payload=payload,
                correlation_id=self.correlation_id,
            ),
        )

    @staticmethod
    def _snapshots(*accounts: Optional[Account]) -> Dict[str, Any]:
        return {a.id: a.entitlement_snapshot() for a in accounts if a is not None}

    # =========================================================================
    # Connect
    # =========================================================================

    def connect(self, requester_id: str, code: Any) -> ConnectionResult:
        """
        Link requester_id to the owner of code.

        Returns:
            ConnectionResult for the requester

        Raises:
            InvalidArgumentError: malformed code, or the requester's own code
            NotFoundError: unknown code, missing owner or requester
            CodeExpiredError: unconnected code past its expiry
            ConflictError: code used by someone else, either side already linked,
                or the flow kept losing write races
        """
        for attempt in range(1, self.max_connect_attempts + 1):
            validation = self.registry.validate_code(code, requester_id)
            if not validation.valid:
                raise rejection_error(validation.reason)

            try:
                result = run_in_transaction(
                    self.session,
                    lambda s: self._connect_once(s, validation.code, requester_id),
                    operation="pairing.connect",
                    max_attempts=1,
                    correlation_id=self.correlation_id,
                )
            except ConcurrentModificationError:
                logger.info(
                    "Connect lost a write race, restarting",
                    extra={
                        "account_id": requester_id,
                        "attempt": attempt,
                        "correlation_id": self.correlation_id,
                    }
                )
                continue

            if not result.already_connected:
                logger.info(
                    "Partners connected",
                    extra={
                        "account_id": requester_id,
                        "partner_id": result.partner_id,
                        "subscription_inherited": result.subscription_inherited,
                        "correlation_id": self.correlation_id,
                    }
                )
                self._publish(
                    PartnerEventType.PARTNER_CONNECTED,
                    recipient_id=result.partner_id,
                    partner_id=requester_id,
                    subscription_inherited=result.subscription_inherited,
                )
            return result

        raise ConcurrentModificationError(attempts=self.max_connect_attempts)

    def _connect_once(self, session: Session, code: str, requester_id: str) -> ConnectionResult:
        now = utcnow()
        pairing_code = (
            session.query(PairingCode)
            .filter(PairingCode.code == code)
            .with_for_update()
            .one_or_none()
        )
        owner_id = pairing_code.owner_id if pairing_code is not None else None
        accounts = self._load_accounts(session, [requester_id, owner_id])
        requester = self._require_account(accounts, requester_id)
        owner = accounts.get(owner_id) if owner_id else None

        reason = evaluate_code(pairing_code, requester_id, requester, owner, now)
        if reason is not None:
            raise rejection_error(reason)

        if (
            pairing_code.connected_partner_id == requester.id
            and requester.partner_id == owner.id
            and owner.partner_id == requester.id
        ):
            return ConnectionResult(
                partner_id=owner.id,
                partner_name=owner.display_name,
                subscription_inherited=shares_subscription(requester, owner),
                already_connected=True,
            )

        before = self._snapshots(requester, owner)

        pairing_code.mark_connected(requester.id, now)
        requester.partner_id = owner.id
        requester.partner_connected_at = now
        owner.partner_id = requester.id
        owner.partner_connected_at = now
        owner.has_unseen_connection = True

        own_codes = (
            session.query(PairingCode)
            .filter(
                PairingCode.owner_id == requester.id,
                PairingCode.is_active.is_(True),
                PairingCode.connected_partner_id.is_(None),
            )
            .all()
        )
        for own_code in own_codes:
            own_code.deactivate(DeactivationReason.OWNER_PAIRED, now)

        derivation = self.resolver.apply_pair(requester, owner, now)

        record_connection_audit(session, ConnectionAuditEvent(
            action=AuditAction.PAIRING_CONNECTED,
            actor_account_id=requester.id,
            counterpart_account_id=owner.id,
            pairing_code=pairing_code.code,
            before_state=before,
            after_state=self._snapshots(requester, owner),
            details={
                "derivation": derivation.to_dict(),
                "inheritance_blocked": derivation.inheritance_blocked,
                "deactivated_own_codes": [c.code for c in own_codes],
            },
            correlation_id=self.correlation_id,
        ))

        return ConnectionResult(
            partner_id=owner.id,
            partner_name=owner.display_name,
            subscription_inherited=shares_subscription(requester, owner),
        )

    # =========================================================================
    # Disconnect
    # =========================================================================

    def disconnect(self, requester_id: str) -> DisconnectResult:
        """
        Unlink requester_id from its partner, on both sides.

        A partner row that disappeared out-of-band is healed: the requester
        side is cleaned up and the call succeeds.

        Raises:
            NotFoundError: requester missing, or has no partner (reason `no-partner`)
        """
        outcome = run_in_transaction(
            self.session,
            lambda s: self._disconnect_once(s, requester_id),
            operation="pairing.disconnect",
            correlation_id=self.correlation_id,
        )
        result, partner_exists = outcome

        logger.info(
            "Partners disconnected",
            extra={
                "account_id": requester_id,
                "partner_id": result.partner_id,
                "partner_exists": partner_exists,
                "correlation_id": self.correlation_id,
            }
        )
        if partner_exists:
            self._publish(
                PartnerEventType.PARTNER_DISCONNECTED,
                recipient_id=result.partner_id,
                partner_id=requester_id,
                entitlement_revoked=result.partner_entitlement_revoked,
            )
        return result

    def _disconnect_once(self, session: Session, requester_id: str):
        now = utcnow()
        requester = session.get(Account, requester_id)
        if requester is None:
            raise NotFoundError("Account", requester_id)
        partner_id = requester.partner_id
        if not partner_id:
            raise NotFoundError("Partner", reason="no-partner")

        accounts = self._load_accounts(session, [requester_id, partner_id])
        requester = self._require_account(accounts, requester_id)
        partner = accounts.get(partner_id)

        before = self._snapshots(requester, partner)

        requester.partner_id = None
        requester.partner_connected_at = None
        requester.has_unseen_connection = False
        if partner is not None and partner.partner_id == requester.id:
            partner.partner_id = None
            partner.partner_connected_at = None
            partner.has_unseen_connection = False

        linking_codes = (
            session.query(PairingCode)
            .filter(or_(
                and_(PairingCode.owner_id == requester.id, PairingCode.connected_partner_id == partner_id),
                and_(PairingCode.owner_id == partner_id, PairingCode.connected_partner_id == requester.id),
            ))
            .all()
        )
        for linking_code in linking_codes:
            linking_code.deactivate(DeactivationReason.CONSUMED, now)

        requester_revoked = self.resolver.release_on_unlink(requester, partner_id)
        partner_revoked = False
        if partner is not None:
            partner_revoked = self.resolver.release_on_unlink(partner, requester.id)

        record_connection_audit(session, ConnectionAuditEvent(
            action=AuditAction.PAIRING_DISCONNECTED,
            actor_account_id=requester.id,
            counterpart_account_id=partner_id,
            before_state=before,
            after_state=self._snapshots(requester, partner),
            details={
                "partner_exists": partner is not None,
                "requester_entitlement_revoked": requester_revoked,
                "partner_entitlement_revoked": partner_revoked,
                "released_codes": [c.code for c in linking_codes],
            },
            correlation_id=self.correlation_id,
        ))

        result = DisconnectResult(
            ok=True,
            partner_id=partner_id,
            requester_entitlement_revoked=requester_revoked,
            partner_entitlement_revoked=partner_revoked,
        )
        return result, partner is not None

    # =========================================================================
    # Subscription sync
    # =========================================================================

    def _linked_pair(self, session: Session, account_id: str):
        account = session.get(Account, account_id)
        if account is None:
            raise NotFoundError("Account", account_id)
        if not account.partner_id:
            raise NotFoundError("Partner", reason="no-partner")
        accounts = self._load_accounts(session, [account_id, account.partner_id])
        account = self._require_account(accounts, account_id)
        partner = accounts.get(account.partner_id)
        if partner is None or partner.partner_id != account.id:
            raise ConflictError("Accounts are not linked", reason="not-linked")
        return account, partner

    def sync_subscriptions(self, requester_id: str) -> SyncResult:
        """
        Re-derive shared entitlement for the requester's couple.

        Raises:
            NotFoundError: requester missing or has no partner
            ConflictError: partner link is not symmetric (reason `not-linked`)
        """
        def work(session: Session) -> SyncResult:
            requester, partner = self._linked_pair(session, requester_id)
            before = self._snapshots(requester, partner)
            derivation = self.resolver.apply_pair(requester, partner)
            if derivation.changed:
                record_connection_audit(session, ConnectionAuditEvent(
                    action=AuditAction.SUBSCRIPTION_SYNCED,
                    actor_account_id=requester.id,
                    counterpart_account_id=partner.id,
                    before_state=before,
                    after_state=self._snapshots(requester, partner),
                    details={"derivation": derivation.to_dict()},
                    correlation_id=self.correlation_id,
                ))
            return SyncResult(
                subscription_inherited=(
                    requester.is_inherited and requester.subscription_source_account_id == partner.id
                ),
                changed_account_ids=derivation.changed_account_ids,
            )

        result = run_in_transaction(
            self.session,
            work,
            operation="subscription.sync",
            correlation_id=self.correlation_id,
        )
        logger.info(
            "Partner subscriptions synced",
            extra={
                "account_id": requester_id,
                "changed": result.changed_account_ids,
                "correlation_id": self.correlation_id,
            }
        )
        return result

    # =========================================================================
    # Entitlement refresh
    # =========================================================================

    def refresh_entitlement(self, account_id: str, proof: str) -> EntitlementRefreshResult:
        """
        Verify an entitlement proof and apply the result to the account and its couple.

        Raises:
            NotFoundError: account missing
            ServiceUnavailableError: verifier not configured or unreachable
        """
        if self.entitlement_verifier is None:
            raise ServiceUnavailableError("Entitlement verification is not configured")
        try:
            is_valid = self.entitlement_verifier.verify(account_id, proof)
        except EntitlementVerificationError as e:
            logger.warning(
                "Entitlement verification failed",
                extra={"account_id": account_id, "error": str(e), "correlation_id": self.correlation_id},
            )
            raise ServiceUnavailableError("Entitlement verification unavailable")

        def work(session: Session) -> EntitlementRefreshResult:
            account = session.get(Account, account_id)
            if account is None:
                raise NotFoundError("Account", account_id)
            accounts = self._load_accounts(session, [account_id, account.partner_id])
            account = self._require_account(accounts, account_id)
            partner = accounts.get(account.partner_id) if account.partner_id else None
            if partner is not None and partner.partner_id != account.id:
                partner = None

            before = self._snapshots(account, partner)
            changed: List[str] = []
            if self.resolver.apply_direct_status(account, is_valid):
                changed.append(account.id)
            if partner is not None:
                derivation = self.resolver.apply_pair(account, partner)
                changed.extend(a for a in derivation.changed_account_ids if a not in changed)

            if changed:
                record_connection_audit(session, ConnectionAuditEvent(
                    action=AuditAction.SUBSCRIPTION_ENTITLEMENT_REFRESHED,
                    actor_account_id=account.id,
                    counterpart_account_id=partner.id if partner is not None else None,
                    before_state=before,
                    after_state=self._snapshots(account, partner),
                    details={"proof_valid": is_valid, "changed_account_ids": changed},
                    correlation_id=self.correlation_id,
                ))

            return EntitlementRefreshResult(
                account_id=account.id,
                is_subscribed=bool(account.is_subscribed),
                subscription_type=account.subscription_type.value,
                changed_account_ids=changed,
            )

        return run_in_transaction(
            self.session,
            work,
            operation="subscription.refresh",
            correlation_id=self.correlation_id,
        )

    # =========================================================================
    # Partner info
    # =========================================================================

    def get_partner_summary(self, account_id: str) -> Optional[PartnerSummary]:
        """
        Summary of the caller's own linked partner, or None when unlinked.

        Raises:
            NotFoundError: account missing
        """
        account = self.session.get(Account, account_id)
        if account is None:
            raise NotFoundError("Account", account_id)
        if not account.partner_id:
            return None
        partner = self.session.get(Account, account.partner_id)
        if partner is None or partner.partner_id != account.id:
            return None
        return PartnerSummary(
            partner_id=partner.id,
            display_name=partner.display_name,
            is_subscribed=bool(partner.is_subscribed),
            subscription_type=partner.subscription_type.value,
            connected_at=account.partner_connected_at,
            has_unseen_connection=bool(account.has_unseen_connection),
        )

    def mark_connection_seen(self, account_id: str) -> bool:
        """
        Clear the unseen-connection flag.

        Returns:
            True if the flag was set
        """
        def work(session: Session) -> bool:
            account = session.get(Account, account_id)
            if account is None:
                raise NotFoundError("Account", account_id)
            if not account.has_unseen_connection:
                return False
            account.has_unseen_connection = False
            return True

        return run_in_transaction(
            self.session,
            work,
            operation="pairing.mark_seen",
            correlation_id=self.correlation_id,
        )
