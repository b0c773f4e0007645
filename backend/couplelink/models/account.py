"""
Account model: one end of a couple.

An account holds at most one partner link and one entitlement state.

Ownership of columns:
- partner_id / partner_connected_at: written only by the connection engine
  and the account deletion cascade.
- is_subscribed / subscription_type / subscription_source_*: written only by
  SubscriptionInheritanceResolver.

INVARIANTS:
- subscription_type == INHERITED  =>  subscription_source_account_id is the
  currently linked partner, and that partner is DIRECT.
- is_subscribed == (subscription_type != NONE)
- partner_id is symmetric (A.partner_id == B  <=>  B.partner_id == A)

Concurrent writers are detected through the version column: a flush that
finds the row version changed underneath it raises StaleDataError.
"""

import enum
import uuid
from typing import Any, Optional

from sqlalchemy import Boolean, Column, Index, Integer, String, Enum as SAEnum

from couplelink.db_base import Base
from couplelink.models.base import TimestampMixin, UTCDateTime


class SubscriptionType(str, enum.Enum):
    """Entitlement state of an account."""
    NONE = "none"             # No premium access
    DIRECT = "direct"         # Paid for by this account
    INHERITED = "inherited"   # Shared from the linked partner


class Account(Base, TimestampMixin):
    """A user account that can be paired with exactly one partner."""

    __tablename__ = "accounts"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Account identifier (identity provider subject)"
    )

    display_name = Column(
        String(255),
        nullable=True,
        comment="Name shown to the partner"
    )

    # Partner link
    partner_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Currently linked partner account, symmetric"
    )

    partner_connected_at = Column(
        UTCDateTime,
        nullable=True,
        comment="When the current partner link was created"
    )

    has_unseen_connection = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Set on the code owner when someone connects to them"
    )

    # Entitlement
    is_subscribed = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Derived: subscription_type != none"
    )

    subscription_type = Column(
        SAEnum(
            SubscriptionType,
            name="subscription_type",
            values_callable=lambda enum_cls: [e.value for e in enum_cls],
            create_constraint=True,
        ),
        nullable=False,
        default=SubscriptionType.NONE,
        index=True,
        comment="none, direct or inherited"
    )

    subscription_source_account_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Direct subscriber this account inherits from (inherited only)"
    )

    subscription_source_timestamp = Column(
        UTCDateTime,
        nullable=True,
        comment="When the inherited entitlement was granted"
    )

    version = Column(
        Integer,
        nullable=False,
        comment="Optimistic concurrency counter"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_accounts_type_source", "subscription_type", "subscription_source_account_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Account(id={self.id}, partner_id={self.partner_id}, "
            f"subscription_type={self.subscription_type})>"
        )

    @property
    def is_direct(self) -> bool:
        return self.subscription_type == SubscriptionType.DIRECT

    @property
    def is_inherited(self) -> bool:
        return self.subscription_type == SubscriptionType.INHERITED

    def entitlement_snapshot(self) -> dict[str, Any]:
        """Entitlement and link state, used for audit before/after images."""
        return {
            "account_id": self.id,
            "partner_id": self.partner_id,
            "is_subscribed": bool(self.is_subscribed),
            "subscription_type": _enum_value(self.subscription_type),
            "subscription_source_account_id": self.subscription_source_account_id,
        }

    @classmethod
    def create(
        cls,
        account_id: Optional[str] = None,
        display_name: Optional[str] = None,
        subscription_type: SubscriptionType = SubscriptionType.NONE,
    ) -> "Account":
        """Factory for a fresh, unlinked account."""
        return cls(
            id=account_id or str(uuid.uuid4()),
            display_name=display_name,
            partner_id=None,
            has_unseen_connection=False,
            is_subscribed=subscription_type != SubscriptionType.NONE,
            subscription_type=subscription_type,
        )


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, enum.Enum) else value
