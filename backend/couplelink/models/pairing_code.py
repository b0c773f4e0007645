"""
PairingCode model for the couple linking flow.

Lifecycle:
1. Owner requests a code -> active, unconnected, expires after the TTL
2. Partner connects with it -> connected_partner_id set, stays active
3. Link ends (disconnect, account deletion) -> deactivated, never reopened

An unconnected code past expires_at is deactivated lazily the next time it is
issued or validated. A connected code does not expire: the link it
records outlives the TTL.
"""

import enum
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Boolean, Column, Index, Integer, String

from couplelink.db_base import Base
from couplelink.models.base import UTCDateTime, as_utc, utcnow


class DeactivationReason(str, enum.Enum):
    """Why a pairing code stopped being usable."""
    EXPIRED = "expired"                   # TTL elapsed before anyone connected
    CONSUMED = "consumed"                 # Link created through it has ended
    OWNER_DELETED = "owner_deleted"       # Owner deleted their account
    OWNER_NOT_FOUND = "owner_not_found"   # Owner row vanished out-of-band
    OWNER_PAIRED = "owner_paired"         # Owner linked through someone else's code


class PairingCode(Base):
    """Short-lived numeric token that lets a partner link to its owner."""

    __tablename__ = "pairing_codes"

    code = Column(
        String(16),
        primary_key=True,
        comment="Numeric pairing token"
    )

    owner_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Account that issued the code"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
        comment="False once expired, consumed or orphaned"
    )

    connected_partner_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Account that connected through this code"
    )

    connected_at = Column(
        UTCDateTime,
        nullable=True,
        comment="When a partner connected through this code"
    )

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="When the code was issued"
    )

    expires_at = Column(
        UTCDateTime,
        nullable=False,
        comment="Unconnected codes are unusable after this instant"
    )

    deactivated_at = Column(
        UTCDateTime,
        nullable=True,
        comment="When the code was deactivated"
    )

    deactivation_reason = Column(
        String(50),
        nullable=True,
        comment="DeactivationReason value"
    )

    version = Column(
        Integer,
        nullable=False,
        comment="Optimistic concurrency counter"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_pairing_codes_owner_active", "owner_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<PairingCode(code={self.code}, owner_id={self.owner_id}, "
            f"is_active={self.is_active}, connected_partner_id={self.connected_partner_id})>"
        )

    @property
    def is_connected(self) -> bool:
        return self.connected_partner_id is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Only unconnected codes expire."""
        if self.is_connected:
            return False
        now = as_utc(now) if now else utcnow()
        return now >= as_utc(self.expires_at)

    def is_usable_by_owner(self, now: Optional[datetime] = None) -> bool:
        """True when the owner can keep handing this code out."""
        return bool(self.is_active) and not self.is_expired(now)

    def mark_connected(self, partner_id: str, now: Optional[datetime] = None) -> None:
        self.connected_partner_id = partner_id
        self.connected_at = now or utcnow()

    def deactivate(self, reason: DeactivationReason, now: Optional[datetime] = None) -> None:
        """Deactivate and release the partner slot. Codes are never reopened."""
        self.is_active = False
        self.connected_partner_id = None
        self.connected_at = None
        self.deactivated_at = now or utcnow()
        self.deactivation_reason = reason.value

    @classmethod
    def issue(
        cls,
        code: str,
        owner_id: str,
        ttl_hours: int,
        now: Optional[datetime] = None,
    ) -> "PairingCode":
        """Factory for a freshly minted, unconnected code."""
        now = now or utcnow()
        return cls(
            code=code,
            owner_id=owner_id,
            is_active=True,
            connected_partner_id=None,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
        )
