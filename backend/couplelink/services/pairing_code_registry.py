"""
PairingCodeRegistry: issues and validates pairing codes.

Handles:
- Issuing a code (idempotent while the owner has a usable one)
- Validating a code for a prospective partner, with typed rejections
- Lazy self-healing of expired codes and codes whose owner vanished

Validation never raises for a rejection; it reports one of CodeRejection.
Callers that need an error use rejection_error().
"""

import logging
import random
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from couplelink.config.pairing import (
    PAIRING_CODE_COLLISION_BACKOFF_SECONDS,
    PAIRING_CODE_LENGTH,
    PAIRING_CODE_MAX_GENERATION_ATTEMPTS,
    PAIRING_CODE_TTL_HOURS,
    code_range,
)
from couplelink.database.transaction import run_in_transaction
from couplelink.models.account import Account
from couplelink.models.base import utcnow
from couplelink.models.pairing_code import DeactivationReason, PairingCode
from couplelink.platform.errors import (
    AppError,
    CodeExpiredError,
    ConflictError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Results
# =============================================================================

class CodeRejection(str, Enum):
    """Why a code cannot be used by the requester, in evaluation order."""
    NOT_FOUND = "not-found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    SELF = "self"
    ALREADY_USED = "already-used"
    OWNER_MISSING = "owner-missing"
    ALREADY_CONNECTED = "already-connected"
    OWNER_ALREADY_CONNECTED = "owner-already-connected"


@dataclass
class IssuedCode:
    code: str
    expires_at: datetime
    created: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "expires_at": self.expires_at.isoformat(),
            "created": self.created,
        }


@dataclass
class CodeValidation:
    code: str
    valid: bool
    reason: Optional[CodeRejection] = None
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "valid": self.valid,
            "reason": self.reason.value if self.reason else None,
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
        }


def rejection_error(reason: CodeRejection) -> AppError:
    """Map a rejection to the error the connect flow reports."""
    if reason == CodeRejection.NOT_FOUND:
        return NotFoundError("Pairing code", reason=reason.value)
    if reason == CodeRejection.INACTIVE:
        return ConflictError("Pairing code is no longer active", reason=reason.value)
    if reason == CodeRejection.EXPIRED:
        return CodeExpiredError()
    if reason == CodeRejection.SELF:
        return InvalidArgumentError("You cannot connect with your own code", reason=reason.value)
    if reason == CodeRejection.ALREADY_USED:
        return ConflictError("Pairing code has already been used", reason=reason.value)
    if reason == CodeRejection.OWNER_MISSING:
        return NotFoundError("Pairing code owner", reason=reason.value)
    if reason == CodeRejection.ALREADY_CONNECTED:
        return ConflictError("You are already connected to a partner", reason=reason.value)
    return ConflictError("Code owner is already connected to a partner", reason=reason.value)


def evaluate_code(
    pairing_code: Optional[PairingCode],
    requester_id: str,
    requester: Optional[Account],
    owner: Optional[Account],
    now: datetime,
) -> Optional[CodeRejection]:
    """
    Apply the rejection rules in priority order.

    The owner is only consulted once the code itself is usable, so callers
    may pass owner=None for a code they did not resolve.
    """
    if pairing_code is None:
        return CodeRejection.NOT_FOUND
    if not pairing_code.is_active:
        return CodeRejection.INACTIVE
    if pairing_code.is_expired(now):
        return CodeRejection.EXPIRED
    if pairing_code.owner_id == requester_id:
        return CodeRejection.SELF
    if pairing_code.connected_partner_id and pairing_code.connected_partner_id != requester_id:
        return CodeRejection.ALREADY_USED
    if owner is None:
        return CodeRejection.OWNER_MISSING
    if requester is not None and requester.partner_id and requester.partner_id != owner.id:
        return CodeRejection.ALREADY_CONNECTED
    if owner.partner_id and owner.partner_id != requester_id:
        return CodeRejection.OWNER_ALREADY_CONNECTED
    return None


# =============================================================================
# Service
# =============================================================================

class PairingCodeRegistry:
    """Service for the pairing code lifecycle."""

    def __init__(
        self,
        session: Session,
        correlation_id: Optional[str] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self._rng = rng or random.SystemRandom()
        self._sleep = sleep
        self._code_pattern = re.compile(rf"^\d{{{PAIRING_CODE_LENGTH}}}$")

    def normalize_code(self, code: Any) -> str:
        """
        Validate the shape of a client-supplied code.

        Raises:
            InvalidArgumentError: missing or malformed code
        """
        if not isinstance(code, str) or not code.strip():
            raise InvalidArgumentError("Pairing code is required", reason="missing-code")
        normalized = code.strip()
        if not self._code_pattern.match(normalized):
            raise InvalidArgumentError(
                f"Pairing code must be {PAIRING_CODE_LENGTH} digits",
                reason="malformed-code",
            )
        return normalized

    # =========================================================================
    # Issue
    # =========================================================================

    def issue_code(self, owner_id: str) -> IssuedCode:
        """
        Return the owner's usable code, minting one if there is none.

        Lookup and insert run in one transaction that claims the owner row,
        so concurrent issuers for the same owner end up with the same code.

        Raises:
            NotFoundError: owner account does not exist
            InternalError: no free code found within PAIRING_CODE_MAX_GENERATION_ATTEMPTS
        """
        issued = run_in_transaction(
            self.session,
            lambda s: self._issue_once(s, owner_id),
            operation="pairing_code.issue",
            correlation_id=self.correlation_id,
        )
        if issued.created:
            logger.info(
                "Pairing code issued",
                extra={"account_id": owner_id, "correlation_id": self.correlation_id},
            )
        return issued

    def _active_codes(self, session: Session, owner_id: str) -> list[PairingCode]:
        return (
            session.query(PairingCode)
            .filter(PairingCode.owner_id == owner_id, PairingCode.is_active.is_(True))
            .order_by(PairingCode.created_at.desc())
            .all()
        )

    def _issue_once(self, session: Session, owner_id: str) -> IssuedCode:
        now = utcnow()
        owner = (
            session.query(Account)
            .filter(Account.id == owner_id)
            .with_for_update()
            .one_or_none()
        )
        if owner is None:
            raise NotFoundError("Account", owner_id)

        for existing in self._active_codes(session, owner_id):
            if existing.is_usable_by_owner(now):
                return IssuedCode(code=existing.code, expires_at=existing.expires_at, created=False)

        # Claim the owner row; a concurrent issuer holding the old version retries
        claimed = session.execute(
            update(Account)
            .where(Account.id == owner_id, Account.version == owner.version)
            .values(version=Account.version + 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed == 0:
            raise StaleDataError(f"Account {owner_id} changed during code issuance")

        self._deactivate_expired_for_owner(session, owner_id, now)

        candidate = self._pick_free_code(session, owner_id)
        pairing_code = PairingCode.issue(candidate, owner_id, PAIRING_CODE_TTL_HOURS, now)
        session.add(pairing_code)
        try:
            session.flush()
        except IntegrityError as e:
            # Another owner took the same code between the check and the insert
            raise StaleDataError(f"Pairing code collision for {owner_id}") from e

        return IssuedCode(code=pairing_code.code, expires_at=pairing_code.expires_at, created=True)

    def _pick_free_code(self, session: Session, owner_id: str) -> str:
        low, high = code_range()
        for attempt in range(1, PAIRING_CODE_MAX_GENERATION_ATTEMPTS + 1):
            candidate = str(self._rng.randint(low, high))
            if session.get(PairingCode, candidate) is None:
                return candidate
            logger.info(
                "Pairing code collision",
                extra={"attempt": attempt, "account_id": owner_id, "correlation_id": self.correlation_id},
            )
            self._sleep(PAIRING_CODE_COLLISION_BACKOFF_SECONDS)

        logger.error(
            "Pairing code generation exhausted",
            extra={
                "account_id": owner_id,
                "attempts": PAIRING_CODE_MAX_GENERATION_ATTEMPTS,
                "correlation_id": self.correlation_id,
            }
        )
        raise InternalError("Could not generate a unique pairing code")

    # =========================================================================
    # Validate
    # =========================================================================

    def validate_code(self, code: Any, requester_id: str) -> CodeValidation:
        """
        Check whether requester_id may connect using code.

        Side effects (committed even when the result is a rejection):
        - an expired unconnected code is deactivated with reason `expired`
        - a code whose owner no longer exists is deactivated with reason
          `owner_not_found`

        Raises:
            InvalidArgumentError: malformed code
            NotFoundError: requester account does not exist
        """
        normalized = self.normalize_code(code)
        now = utcnow()

        requester = self.session.get(Account, requester_id)
        if requester is None:
            raise NotFoundError("Account", requester_id, reason="requester-missing")

        pairing_code = self.session.get(PairingCode, normalized)
        owner = None
        if pairing_code is not None:
            owner = self.session.get(Account, pairing_code.owner_id)

        reason = evaluate_code(pairing_code, requester_id, requester, owner, now)

        if reason == CodeRejection.EXPIRED:
            self._self_heal(normalized, DeactivationReason.EXPIRED, now)
        elif reason == CodeRejection.OWNER_MISSING:
            self._self_heal(normalized, DeactivationReason.OWNER_NOT_FOUND, now)

        if reason is not None:
            logger.info(
                "Pairing code rejected",
                extra={
                    "account_id": requester_id,
                    "reason": reason.value,
                    "correlation_id": self.correlation_id,
                }
            )
            return CodeValidation(code=normalized, valid=False, reason=reason)

        return CodeValidation(
            code=normalized,
            valid=True,
            owner_id=owner.id,
            owner_name=owner.display_name,
        )

    # =========================================================================
    # Self-healing writes
    # =========================================================================

    def _self_heal(self, code: str, reason: DeactivationReason, now: datetime) -> None:
        run_in_transaction(
            self.session,
            lambda s: self._deactivate_code(s, code, reason, now),
            operation="pairing_code.self_heal",
            correlation_id=self.correlation_id,
        )
        logger.info(
            "Pairing code deactivated",
            extra={"reason": reason.value, "correlation_id": self.correlation_id},
        )

    @staticmethod
    def _deactivate_code(session: Session, code: str, reason: DeactivationReason, now: datetime) -> int:
        """Conditional, idempotent deactivation of one code."""
        conditions = [PairingCode.code == code, PairingCode.is_active.is_(True)]
        if reason == DeactivationReason.EXPIRED:
            # A code connected in the meantime no longer expires
            conditions.append(PairingCode.connected_partner_id.is_(None))
        result = session.execute(
            update(PairingCode)
            .where(*conditions)
            .values(
                is_active=False,
                connected_partner_id=None,
                connected_at=None,
                deactivated_at=now,
                deactivation_reason=reason.value,
                version=PairingCode.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    def _deactivate_expired_for_owner(session: Session, owner_id: str, now: datetime) -> int:
        result = session.execute(
            update(PairingCode)
            .where(
                PairingCode.owner_id == owner_id,
                PairingCode.is_active.is_(True),
                PairingCode.connected_partner_id.is_(None),
                PairingCode.expires_at <= now,
            )
            .values(
                is_active=False,
                deactivated_at=now,
                deactivation_reason=DeactivationReason.EXPIRED.value,
                version=PairingCode.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
