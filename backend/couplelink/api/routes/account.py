"""Account API routes."""

import logging

from fastapi import APIRouter, Depends

from couplelink.api.dependencies.services import get_deletion_coordinator
from couplelink.api.schemas.pairing import OkResponse
from couplelink.middleware.rate_limit import rate_limit_dependency
from couplelink.platform.auth import CallerIdentity, get_caller_identity
from couplelink.services.account_deletion import AccountDeletionCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/account", tags=["account"])


@router.delete("", response_model=OkResponse)
async def delete_account(
    identity: CallerIdentity = Depends(get_caller_identity),
    _rate_limit=Depends(rate_limit_dependency("delete_account")),
    coordinator: AccountDeletionCoordinator = Depends(get_deletion_coordinator),
):
    """
    Permanently delete the caller's account.

    Unlinks the partner, revokes any entitlement the partner inherited from
    the caller, releases pairing codes and removes the login identity.
    """
    result = coordinator.delete_account(identity.account_id)
    logger.info(
        "Account deleted by owner",
        extra={
            "action": "account.deleted",
            "account_id": identity.account_id,
            "account_existed": result.account_existed,
            "correlation_id": coordinator.correlation_id,
        },
    )
    return OkResponse(ok=result.ok)
