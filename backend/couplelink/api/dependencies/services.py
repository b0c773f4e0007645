"""FastAPI dependencies that build request-scoped services."""

import os
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from couplelink.database.session import get_db_session
from couplelink.integrations.entitlement_client import EntitlementVerifier, HttpEntitlementVerifier
from couplelink.integrations.identity_client import HttpIdentityProvider, IdentityProvider
from couplelink.platform.errors import ServiceUnavailableError, get_correlation_id
from couplelink.services.account_deletion import AccountDeletionCoordinator
from couplelink.services.connection_engine import ConnectionTransactionEngine
from couplelink.services.orphan_auditor import OrphanAuditor
from couplelink.services.pairing_code_registry import PairingCodeRegistry
from couplelink.services.partner_events import PartnerEventPublisher, get_event_publisher


def get_request_correlation_id(request: Request) -> str:
    return get_correlation_id(request)


def get_entitlement_verifier() -> Optional[EntitlementVerifier]:
    """HTTP verifier when configured; None makes refresh report 503."""
    if not os.getenv("ENTITLEMENT_API_URL") or not os.getenv("ENTITLEMENT_API_KEY"):
        return None
    return HttpEntitlementVerifier.from_env()


def get_identity_provider() -> IdentityProvider:
    if not os.getenv("IDENTITY_API_URL") or not os.getenv("IDENTITY_API_KEY"):
        raise ServiceUnavailableError("Identity provider is not configured")
    return HttpIdentityProvider.from_env()


def get_pairing_code_registry(
    db: Session = Depends(get_db_session),
    correlation_id: str = Depends(get_request_correlation_id),
) -> PairingCodeRegistry:
    return PairingCodeRegistry(db, correlation_id)


def get_connection_engine(
    db: Session = Depends(get_db_session),
    correlation_id: str = Depends(get_request_correlation_id),
    publisher: PartnerEventPublisher = Depends(get_event_publisher),
    verifier: Optional[EntitlementVerifier] = Depends(get_entitlement_verifier),
) -> ConnectionTransactionEngine:
    return ConnectionTransactionEngine(
        db,
        correlation_id=correlation_id,
        publisher=publisher,
        entitlement_verifier=verifier,
    )


def get_orphan_auditor(
    db: Session = Depends(get_db_session),
    correlation_id: str = Depends(get_request_correlation_id),
) -> OrphanAuditor:
    return OrphanAuditor(db, correlation_id)


def get_deletion_coordinator(
    db: Session = Depends(get_db_session),
    correlation_id: str = Depends(get_request_correlation_id),
    publisher: PartnerEventPublisher = Depends(get_event_publisher),
    identity_provider: IdentityProvider = Depends(get_identity_provider),
) -> AccountDeletionCoordinator:
    return AccountDeletionCoordinator(
        db,
        identity_provider=identity_provider,
        publisher=publisher,
        correlation_id=correlation_id,
    )
