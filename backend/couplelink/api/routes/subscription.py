"""Subscription API routes."""

from fastapi import APIRouter, Depends

from couplelink.api.dependencies.services import get_connection_engine
from couplelink.api.schemas.pairing import EntitlementResponse, RefreshEntitlementRequest
from couplelink.middleware.rate_limit import rate_limit_dependency
from couplelink.platform.auth import CallerIdentity, get_caller_identity
from couplelink.platform.errors import InvalidArgumentError
from couplelink.services.connection_engine import ConnectionTransactionEngine

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


@router.post("/refresh", response_model=EntitlementResponse)
async def refresh_entitlement(
    body: RefreshEntitlementRequest,
    identity: CallerIdentity = Depends(get_caller_identity),
    _rate_limit=Depends(rate_limit_dependency("refresh_entitlement")),
    engine: ConnectionTransactionEngine = Depends(get_connection_engine),
):
    """Verify a store entitlement proof and update the caller and their partner."""
    if not body.proof or not body.proof.strip():
        raise InvalidArgumentError("Entitlement proof is required", reason="missing-proof")
    result = engine.refresh_entitlement(identity.account_id, body.proof)
    return EntitlementResponse(
        is_subscribed=result.is_subscribed,
        subscription_type=result.subscription_type,
        changed_account_ids=result.changed_account_ids,
    )
