"""
Shared fixtures for the couplelink test suite.

The database is a file-backed SQLite database per test so that worker
threads in the concurrency tests share state through their own sessions.
"""

from datetime import timedelta
from typing import Optional
from unittest.mock import Mock

import pytest

import couplelink.models  # noqa: F401  (registers all tables on Base)
from couplelink.database.session import create_db_engine, make_session_factory
from couplelink.db_base import Base
from couplelink.models.account import Account, SubscriptionType
from couplelink.models.base import utcnow
from couplelink.models.pairing_code import PairingCode


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine(tmp_path):
    """SQLite engine on a temporary file, schema created."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'couplelink.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Builders
# =============================================================================

@pytest.fixture
def make_account(db_session):
    """
    Create and commit an account.

    Link state and entitlement are written as given, without any checks, so
    tests can also build inconsistent (orphaned) state.
    """
    def _make(
        account_id: str,
        display_name: Optional[str] = None,
        subscription_type: SubscriptionType = SubscriptionType.NONE,
        partner_id: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> Account:
        account = Account.create(
            account_id=account_id,
            display_name=display_name or account_id,
            subscription_type=subscription_type,
        )
        account.partner_id = partner_id
        if partner_id:
            account.partner_connected_at = utcnow()
        if subscription_type == SubscriptionType.INHERITED:
            account.subscription_source_account_id = source_id
            account.subscription_source_timestamp = utcnow()
        db_session.add(account)
        db_session.commit()
        return account

    return _make


@pytest.fixture
def make_code(db_session):
    """Create and commit a pairing code."""
    def _make(
        code: str,
        owner_id: str,
        expires_in: timedelta = timedelta(hours=24),
        is_active: bool = True,
        connected_partner_id: Optional[str] = None,
    ) -> PairingCode:
        now = utcnow()
        pairing_code = PairingCode(
            code=code,
            owner_id=owner_id,
            is_active=is_active,
            connected_partner_id=connected_partner_id,
            connected_at=now if connected_partner_id else None,
            created_at=now - timedelta(hours=1),
            expires_at=now + expires_in,
        )
        db_session.add(pairing_code)
        db_session.commit()
        return pairing_code

    return _make


@pytest.fixture
def link_accounts(db_session):
    """Make two existing accounts partners of each other."""
    def _link(a: Account, b: Account) -> None:
        now = utcnow()
        a.partner_id = b.id
        a.partner_connected_at = now
        b.partner_id = a.id
        b.partner_connected_at = now
        db_session.commit()

    return _link


# =============================================================================
# Collaborators
# =============================================================================

@pytest.fixture
def publisher():
    """Partner event publisher that records what was published."""
    return Mock(spec=["publish"])


@pytest.fixture
def identity_provider():
    return Mock(spec=["delete_identity"])
