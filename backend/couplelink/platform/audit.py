"""
Audit trail for pairing and entitlement changes.

CRITICAL REQUIREMENTS:
- Connection audit records are append-only (no UPDATE/DELETE through the ORM)
- Every link, unlink, deletion and entitlement repair writes one record
- Records are written inside the same transaction as the change they describe,
  so an audit row exists iff the change committed
- Records carry before/after entitlement snapshots of every account touched
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, Index, String, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

from couplelink.db_base import Base
from couplelink.models.base import UTCDateTime, utcnow

logger = logging.getLogger(__name__)

# Use JSONB for PostgreSQL, JSON for other databases (testing)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class AuditAction(str, Enum):
    """Enumeration of all auditable pairing actions."""
    PAIRING_CONNECTED = "pairing.connected"
    PAIRING_DISCONNECTED = "pairing.disconnected"
    ACCOUNT_DELETED = "account.deleted"
    SUBSCRIPTION_ORPHAN_REPAIRED = "subscription.orphan_repaired"
    SUBSCRIPTION_SYNCED = "subscription.synced"
    SUBSCRIPTION_ENTITLEMENT_REFRESHED = "subscription.entitlement_refreshed"


class ImmutableRecordError(Exception):
    """Raised when code tries to modify or delete an audit record."""


class ConnectionAuditRecord(Base):
    """
    Connection audit database model.

    CRITICAL: This table is append-only. ORM updates and deletes raise
    ImmutableRecordError.
    """
    __tablename__ = "connection_audit_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    action = Column(String(100), nullable=False, index=True)
    actor_account_id = Column(String(255), nullable=True, index=True)  # NULL for system repairs
    counterpart_account_id = Column(String(255), nullable=True, index=True)
    pairing_code = Column(String(16), nullable=True)
    before_state = Column(JSONType, nullable=False, default=dict)
    after_state = Column(JSONType, nullable=False, default=dict)
    details = Column(JSONType, nullable=False, default=dict)
    correlation_id = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_connection_audit_actor_created", "actor_account_id", "created_at"),
        Index("ix_connection_audit_correlation", "correlation_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ConnectionAuditRecord(id={self.id}, action={self.action}, "
            f"actor_account_id={self.actor_account_id})>"
        )


@event.listens_for(ConnectionAuditRecord, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ImmutableRecordError(f"Audit record {target.id} cannot be modified")


@event.listens_for(ConnectionAuditRecord, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Audit record {target.id} cannot be deleted")


@dataclass
class ConnectionAuditEvent:
    """
    Audit event data, built by the services before persisting.

    before_state / after_state map account_id -> entitlement snapshot.
    """
    action: AuditAction
    actor_account_id: Optional[str] = None
    counterpart_account_id: Optional[str] = None
    pairing_code: Optional[str] = None
    before_state: dict[str, Any] = field(default_factory=dict)
    after_state: dict[str, Any] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value if isinstance(self.action, AuditAction) else self.action,
            "actor_account_id": self.actor_account_id,
            "counterpart_account_id": self.counterpart_account_id,
            "pairing_code": self.pairing_code,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "details": self.details,
            "correlation_id": self.correlation_id,
        }


def record_connection_audit(session: Session, audit_event: ConnectionAuditEvent) -> ConnectionAuditRecord:
    """
    Stage an audit record in the caller's transaction.

    Does not commit: the record is persisted atomically with the change it
    describes, or not at all.
    """
    record = ConnectionAuditRecord(id=str(uuid.uuid4()), **audit_event.to_dict())
    session.add(record)

    logger.info(
        "Connection audit event staged",
        extra={
            "audit_id": record.id,
            "action": record.action,
            "account_id": audit_event.actor_account_id,
            "partner_id": audit_event.counterpart_account_id,
            "correlation_id": audit_event.correlation_id,
        }
    )
    return record
