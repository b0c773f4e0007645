"""
Import of account and pairing code documents from the legacy document store.

Legacy documents carried the same facts under several names:
- partner link in `partnerId` or `connectedPartnerId`
- inheritance source in `subscriptionInheritedFrom`, `subscriptionSharedFrom`
  or a nested `subscription.inheritedFrom`
- `subscriptionType` as "direct", "inherited", "shared_from_partner" or a
  store product id for direct purchases

The pydantic models below normalise all of these into the canonical
columns. Imported state is not trusted: run OrphanAuditor.cleanup()
afterwards to repair anything that violates the inheritance rules.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.orm import Session

from couplelink.config.pairing import PAIRING_CODE_TTL_HOURS
from couplelink.database.transaction import run_in_transaction
from couplelink.models.account import Account, SubscriptionType
from couplelink.models.base import as_utc, utcnow
from couplelink.models.pairing_code import PairingCode

logger = logging.getLogger(__name__)

INHERITED_TYPE_ALIASES = {"inherited", "shared_from_partner"}
NO_SUBSCRIPTION_ALIASES = {"", "none", "free"}


def _first_present(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


class LegacyAccountDocument(BaseModel):
    """A user document from the legacy store, normalised on validation."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    display_name: Optional[str] = Field(default=None, alias="name")
    partner_id: Optional[str] = Field(default=None, alias="partnerId")
    partner_connected_at: Optional[datetime] = Field(default=None, alias="partnerConnectedAt")
    subscription_type: SubscriptionType = SubscriptionType.NONE
    subscription_source_account_id: Optional[str] = None
    subscription_source_timestamp: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def normalise_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        nested = data.get("subscription") if isinstance(data.get("subscription"), dict) else {}

        if not data.get("partnerId") and data.get("connectedPartnerId"):
            data["partnerId"] = data["connectedPartnerId"]
        if "partnerConnectedAt" not in data and data.get("connectedAt"):
            data["partnerConnectedAt"] = data["connectedAt"]

        raw_type = (_first_present(data.get("subscriptionType"), nested.get("subscriptionType")) or "").lower()
        source = _first_present(
            data.get("subscriptionInheritedFrom"),
            data.get("subscriptionSharedFrom"),
            nested.get("inheritedFrom"),
        )
        is_subscribed = bool(data.get("isSubscribed", nested.get("isSubscribed", False)))

        data["subscription_source_account_id"] = None
        data["subscription_source_timestamp"] = None
        if raw_type in INHERITED_TYPE_ALIASES or (source and raw_type != "direct"):
            # An inherited marker without a source grants nothing
            if source:
                data["subscription_type"] = SubscriptionType.INHERITED
                data["subscription_source_account_id"] = source
                data["subscription_source_timestamp"] = nested.get("inheritedAt")
            else:
                data["subscription_type"] = SubscriptionType.NONE
        elif raw_type == "direct" or (is_subscribed and raw_type not in NO_SUBSCRIPTION_ALIASES):
            # Product ids mark direct purchases
            data["subscription_type"] = SubscriptionType.DIRECT
        else:
            data["subscription_type"] = SubscriptionType.NONE
        return data

    @property
    def is_subscribed(self) -> bool:
        return self.subscription_type != SubscriptionType.NONE


class LegacyPairingCodeDocument(BaseModel):
    """A pairing code document from the legacy store (document id is the code)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    code: str = Field(..., pattern=r"^\d{8}$")
    owner_id: str = Field(..., alias="userId", min_length=1)
    is_active: bool = Field(default=True, alias="isActive")
    connected_partner_id: Optional[str] = Field(default=None, alias="connectedPartnerId")
    connected_at: Optional[datetime] = Field(default=None, alias="connectedAt")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    deactivation_reason: Optional[str] = Field(default=None, alias="deactivationReason")

    @model_validator(mode="after")
    def inactive_codes_hold_no_partner(self):
        if not self.is_active:
            self.connected_partner_id = None
            self.connected_at = None
        return self


@dataclass
class LegacyImportReport:
    accounts_created: int = 0
    accounts_updated: int = 0
    codes_created: int = 0
    codes_updated: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "accounts_created": self.accounts_created,
            "accounts_updated": self.accounts_updated,
            "codes_created": self.codes_created,
            "codes_updated": self.codes_updated,
        }


def _apply_account(session: Session, doc: LegacyAccountDocument, report: LegacyImportReport) -> None:
    account = session.get(Account, doc.id)
    if account is None:
        account = Account(id=doc.id, has_unseen_connection=False)
        session.add(account)
        report.accounts_created += 1
    else:
        report.accounts_updated += 1

    account.display_name = doc.display_name
    account.partner_id = doc.partner_id
    account.partner_connected_at = as_utc(doc.partner_connected_at)
    account.subscription_type = doc.subscription_type
    account.is_subscribed = doc.is_subscribed
    account.subscription_source_account_id = doc.subscription_source_account_id
    account.subscription_source_timestamp = as_utc(doc.subscription_source_timestamp)


def _apply_code(session: Session, doc: LegacyPairingCodeDocument, report: LegacyImportReport) -> None:
    created_at = as_utc(doc.created_at) or utcnow()
    expires_at = as_utc(doc.expires_at) or created_at + timedelta(hours=PAIRING_CODE_TTL_HOURS)

    pairing_code = session.get(PairingCode, doc.code)
    if pairing_code is None:
        pairing_code = PairingCode(code=doc.code)
        session.add(pairing_code)
        report.codes_created += 1
    else:
        report.codes_updated += 1

    pairing_code.owner_id = doc.owner_id
    pairing_code.is_active = doc.is_active
    pairing_code.connected_partner_id = doc.connected_partner_id
    pairing_code.connected_at = as_utc(doc.connected_at)
    pairing_code.created_at = created_at
    pairing_code.expires_at = expires_at
    pairing_code.deactivation_reason = doc.deactivation_reason
    if not doc.is_active and pairing_code.deactivated_at is None:
        pairing_code.deactivated_at = utcnow()


def import_legacy_documents(
    session: Session,
    accounts: Iterable[LegacyAccountDocument],
    codes: Iterable[LegacyPairingCodeDocument] = (),
) -> LegacyImportReport:
    """
    Upsert legacy documents in one transaction.

    Returns:
        Counts of created and updated rows
    """
    account_docs = list(accounts)
    code_docs = list(codes)

    def work(s: Session) -> LegacyImportReport:
        report = LegacyImportReport()
        for doc in account_docs:
            _apply_account(s, doc, report)
        for doc in code_docs:
            _apply_code(s, doc, report)
        return report

    report = run_in_transaction(session, work, operation="legacy.import")
    logger.info("Legacy documents imported", extra=report.to_dict())
    return report
