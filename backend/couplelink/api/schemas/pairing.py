"""
Pydantic schemas for the pairing, subscription, account and admin APIs.

Bodies use camelCase on the wire; snake_case is accepted on input too.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Pairing codes

class IssueCodeResponse(CamelModel):
    code: str
    expires_at: datetime


class CodeRequest(CamelModel):
    """Body carrying a pairing code. Shape is checked by the service."""
    code: Optional[str] = Field(default=None, description="8-digit pairing code")


class ValidateCodeResponse(CamelModel):
    valid: bool
    reason: Optional[str] = None
    owner_id: Optional[str] = None
    owner_name: Optional[str] = None


# Connection

class ConnectResponse(CamelModel):
    partner_id: str
    partner_name: Optional[str] = None
    subscription_inherited: bool
    already_connected: bool = False


class DisconnectResponse(CamelModel):
    ok: bool
    partner_id: str
    requester_entitlement_revoked: bool
    partner_entitlement_revoked: bool


class SyncResponse(CamelModel):
    subscription_inherited: bool
    changed_account_ids: List[str] = Field(default_factory=list)


class PartnerSummaryModel(CamelModel):
    partner_id: str
    display_name: Optional[str] = None
    is_subscribed: bool
    subscription_type: str
    connected_at: Optional[datetime] = None
    has_unseen_connection: bool = False


class PartnerInfoResponse(CamelModel):
    connected: bool
    partner: Optional[PartnerSummaryModel] = None


class OkResponse(CamelModel):
    ok: bool = True


# Subscription

class RefreshEntitlementRequest(CamelModel):
    proof: Optional[str] = Field(default=None, description="Opaque entitlement proof from the app store")


class EntitlementResponse(CamelModel):
    is_subscribed: bool
    subscription_type: str
    changed_account_ids: List[str] = Field(default_factory=list)


# Admin

class AdminRequest(CamelModel):
    admin_secret: Optional[str] = None


class OrphanViolationModel(CamelModel):
    account_id: str
    category: str
    partner_id: Optional[str] = None
    source_account_id: Optional[str] = None


class OrphanReportResponse(CamelModel):
    checked_count: int
    violation_count: int
    violations: List[OrphanViolationModel] = Field(default_factory=list)
    summary: Dict[str, int] = Field(default_factory=dict)


class OrphanCleanupResponse(CamelModel):
    checked_count: int
    cleaned_count: int
    cleaned_account_ids: List[str] = Field(default_factory=list)


class CodeCleanupResponse(CamelModel):
    checked_count: int
    deactivated_count: int
