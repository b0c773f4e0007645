"""
Pairing API routes: codes, connect/disconnect, shared subscription sync.

The acting account is always the authenticated caller from the bearer token.
Account ids are NEVER accepted from the request body.
"""

from fastapi import APIRouter, Depends

from couplelink.api.dependencies.services import get_connection_engine, get_pairing_code_registry
from couplelink.api.schemas.pairing import (
    CodeRequest,
    ConnectResponse,
    DisconnectResponse,
    IssueCodeResponse,
    OkResponse,
    PartnerInfoResponse,
    PartnerSummaryModel,
    SyncResponse,
    ValidateCodeResponse,
)
from couplelink.middleware.rate_limit import rate_limit_dependency
from couplelink.platform.auth import CallerIdentity, get_caller_identity
from couplelink.services.connection_engine import ConnectionTransactionEngine
from couplelink.services.pairing_code_registry import PairingCodeRegistry

router = APIRouter(prefix="/api/pairing", tags=["pairing"])


@router.post("/code", response_model=IssueCodeResponse)
async def issue_pairing_code(
    identity: CallerIdentity = Depends(get_caller_identity),
    _rate_limit=Depends(rate_limit_dependency("issue_code")),
    registry: PairingCodeRegistry = Depends(get_pairing_code_registry),
):
    """Return the caller's active pairing code, creating one if needed."""
    issued = registry.issue_code(identity.account_id)
    return IssueCodeResponse(code=issued.code, expires_at=issued.expires_at)


@router.post("/code/validate", response_model=ValidateCodeResponse)
async def validate_pairing_code(
    body: CodeRequest,
    identity: CallerIdentity = Depends(get_caller_identity),
    _rate_limit=Depends(rate_limit_dependency("validate_code")),
    registry: PairingCodeRegistry = Depends(get_pairing_code_registry),
):
    """Check a partner's code before connecting. Rejections are reported, not raised."""
    validation = registry.validate_code(body.code, identity.account_id)
    return ValidateCodeResponse(
        valid=validation.valid,
        reason=validation.reason.value if validation.reason else None,
        owner_id=validation.owner_id,
        owner_name=validation.owner_name,
    )


@router.post("/connect", response_model=ConnectResponse)
async def connect_to_partner(
    body: CodeRequest,
    identity: CallerIdentity = Depends(get_caller_identity),
    _rate_limit=Depends(rate_limit_dependency("connect")),
    engine: ConnectionTransactionEngine = Depends(get_connection_engine),
):
    result = engine.connect(identity.account_id, body.code)
    return ConnectResponse(**result.to_dict())


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect_partner(
    identity: CallerIdentity = Depends(get_caller_identity),
    _rate_limit=Depends(rate_limit_dependency("disconnect")),
    engine: ConnectionTransactionEngine = Depends(get_connection_engine),
):
    result = engine.disconnect(identity.account_id)
    return DisconnectResponse(**result.to_dict())


@router.post("/subscription/sync", response_model=SyncResponse)
async def sync_partner_subscriptions(
    identity: CallerIdentity = Depends(get_caller_identity),
    _rate_limit=Depends(rate_limit_dependency("sync_subscription")),
    engine: ConnectionTransactionEngine = Depends(get_connection_engine),
):
    result = engine.sync_subscriptions(identity.account_id)
    return SyncResponse(**result.to_dict())


@router.get("/partner", response_model=PartnerInfoResponse)
async def get_partner_info(
    identity: CallerIdentity = Depends(get_caller_identity),
    engine: ConnectionTransactionEngine = Depends(get_connection_engine),
):
    summary = engine.get_partner_summary(identity.account_id)
    if summary is None:
        return PartnerInfoResponse(connected=False)
    return PartnerInfoResponse(
        connected=True,
        partner=PartnerSummaryModel(
            partner_id=summary.partner_id,
            display_name=summary.display_name,
            is_subscribed=summary.is_subscribed,
            subscription_type=summary.subscription_type,
            connected_at=summary.connected_at,
            has_unseen_connection=summary.has_unseen_connection,
        ),
    )


@router.post("/partner/seen", response_model=OkResponse)
async def mark_connection_seen(
    identity: CallerIdentity = Depends(get_caller_identity),
    engine: ConnectionTransactionEngine = Depends(get_connection_engine),
):
    engine.mark_connection_seen(identity.account_id)
    return OkResponse(ok=True)
