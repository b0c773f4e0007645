"""
Admin maintenance routes for orphaned entitlements and pairing codes.

Protected by the ADMIN_SECRET shared secret sent in the body. When no secret
is configured every call is denied.
"""

import logging

from fastapi import APIRouter, Depends

from couplelink.api.dependencies.services import get_orphan_auditor, get_request_correlation_id
from couplelink.api.schemas.pairing import (
    AdminRequest,
    CodeCleanupResponse,
    OrphanCleanupResponse,
    OrphanReportResponse,
)
from couplelink.platform.auth import require_admin_secret
from couplelink.services.orphan_auditor import OrphanAuditor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/orphans/diagnose", response_model=OrphanReportResponse)
async def diagnose_orphans(
    body: AdminRequest,
    correlation_id: str = Depends(get_request_correlation_id),
    auditor: OrphanAuditor = Depends(get_orphan_auditor),
):
    """Report orphaned inherited entitlements without changing anything."""
    require_admin_secret(body.admin_secret, correlation_id)
    return OrphanReportResponse(**auditor.diagnose().to_dict())


@router.post("/orphans/cleanup", response_model=OrphanCleanupResponse)
async def cleanup_orphans(
    body: AdminRequest,
    correlation_id: str = Depends(get_request_correlation_id),
    auditor: OrphanAuditor = Depends(get_orphan_auditor),
):
    require_admin_secret(body.admin_secret, correlation_id)
    report = auditor.cleanup()
    logger.info(
        "Admin orphan cleanup",
        extra={"action": "admin.orphan_cleanup", "cleaned_count": report.cleaned_count, "correlation_id": correlation_id},
    )
    return OrphanCleanupResponse(**report.to_dict())


@router.post("/pairing-codes/cleanup", response_model=CodeCleanupResponse)
async def cleanup_orphaned_codes(
    body: AdminRequest,
    correlation_id: str = Depends(get_request_correlation_id),
    auditor: OrphanAuditor = Depends(get_orphan_auditor),
):
    require_admin_secret(body.admin_secret, correlation_id)
    return CodeCleanupResponse(**auditor.cleanup_orphaned_codes().to_dict())
