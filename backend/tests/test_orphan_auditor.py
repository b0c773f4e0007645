"""
Tests for OrphanAuditor and the scheduled orphan cleanup job.
"""

import pytest

from couplelink.models.account import Account, SubscriptionType
from couplelink.models.pairing_code import DeactivationReason, PairingCode
from couplelink.platform.audit import AuditAction, ConnectionAuditRecord
from couplelink.services.orphan_auditor import OrphanAuditor, OrphanCategory
from couplelink.workers.orphan_cleanup_job import run_orphan_cleanup


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def auditor(db_session):
    return OrphanAuditor(db_session, correlation_id="test-corr")


@pytest.fixture
def orphans(make_account):
    """
    One valid couple plus one orphan of every category.

    valid-b inherits from valid-a (direct, linked)           -> valid
    lonely inherits from nobody it is linked to              -> no-partner
    widow is linked to and inherits from a deleted account   -> partner-deleted
    drifter is linked to anchor but inherits from stranger   -> source-mismatch
    lapsed is linked to and inherits from a non-direct acct  -> partner-lost-direct-subscription
    """
    make_account("valid-a", subscription_type=SubscriptionType.DIRECT, partner_id="valid-b")
    make_account("valid-b", subscription_type=SubscriptionType.INHERITED, partner_id="valid-a", source_id="valid-a")

    make_account("lonely", subscription_type=SubscriptionType.INHERITED, source_id="somebody")

    make_account("widow", subscription_type=SubscriptionType.INHERITED, partner_id="deleted", source_id="deleted")

    make_account("anchor", subscription_type=SubscriptionType.DIRECT, partner_id="drifter")
    make_account("stranger", subscription_type=SubscriptionType.DIRECT)
    make_account("drifter", subscription_type=SubscriptionType.INHERITED, partner_id="anchor", source_id="stranger")

    make_account("former-payer", partner_id="lapsed")
    make_account("lapsed", subscription_type=SubscriptionType.INHERITED, partner_id="former-payer", source_id="former-payer")


def _account(db_session, account_id):
    db_session.expire_all()
    return db_session.get(Account, account_id)


# =============================================================================
# Diagnose
# =============================================================================

class TestDiagnose:

    def test_every_category_is_detected(self, auditor, orphans):
        report = auditor.diagnose()

        assert report.checked_count == 5
        categories = {v.account_id: v.category for v in report.violations}
        assert categories == {
            "lonely": OrphanCategory.NO_PARTNER,
            "widow": OrphanCategory.PARTNER_DELETED,
            "drifter": OrphanCategory.SOURCE_MISMATCH,
            "lapsed": OrphanCategory.PARTNER_LOST_DIRECT,
        }
        assert report.summary == {
            "no-partner": 1,
            "partner-deleted": 1,
            "source-mismatch": 1,
            "partner-lost-direct-subscription": 1,
        }

    def test_one_sided_link_is_a_source_mismatch(self, auditor, make_account):
        make_account("payer", subscription_type=SubscriptionType.DIRECT, partner_id="someone-else")
        make_account("clinger", subscription_type=SubscriptionType.INHERITED, partner_id="payer", source_id="payer")

        (violation,) = auditor.diagnose().violations

        assert violation.account_id == "clinger"
        assert violation.category == OrphanCategory.SOURCE_MISMATCH

    def test_diagnose_is_read_only(self, auditor, orphans, db_session):
        auditor.diagnose()

        assert _account(db_session, "lonely").is_inherited
        assert db_session.query(ConnectionAuditRecord).count() == 0

    def test_report_to_dict(self, auditor, orphans):
        data = auditor.diagnose().to_dict()

        assert data["checked_count"] == 5
        assert data["violation_count"] == 4
        assert {"account_id": "lonely", "category": "no-partner", "partner_id": None,
                "source_account_id": "somebody"} in data["violations"]

    def test_clean_database(self, auditor, make_account):
        make_account("solo", subscription_type=SubscriptionType.DIRECT)

        report = auditor.diagnose()

        assert report.checked_count == 0
        assert report.violations == []


# =============================================================================
# Cleanup
# =============================================================================

class TestCleanup:

    def test_cleanup_repairs_every_orphan(self, auditor, orphans, db_session):
        report = auditor.cleanup()

        assert report.checked_count == 5
        assert report.cleaned_count == 4
        assert sorted(report.cleaned_account_ids) == ["drifter", "lapsed", "lonely", "widow"]

        lonely = _account(db_session, "lonely")
        assert lonely.subscription_type == SubscriptionType.NONE
        assert lonely.is_subscribed is False
        assert lonely.subscription_source_account_id is None

        widow = db_session.get(Account, "widow")
        assert widow.subscription_type == SubscriptionType.NONE
        assert widow.partner_id is None

        # Still linked to a direct subscriber: re-derived from the real partner
        drifter = db_session.get(Account, "drifter")
        assert drifter.subscription_type == SubscriptionType.INHERITED
        assert drifter.subscription_source_account_id == "anchor"

        lapsed = db_session.get(Account, "lapsed")
        assert lapsed.subscription_type == SubscriptionType.NONE
        assert lapsed.partner_id == "former-payer"

        valid_b = db_session.get(Account, "valid-b")
        assert valid_b.subscription_source_account_id == "valid-a"

    def test_cleanup_converges(self, auditor, orphans):
        auditor.cleanup()

        assert auditor.diagnose().violations == []
        second = auditor.cleanup()
        assert second.cleaned_count == 0

    def test_cleanup_writes_one_audit_record_per_repair(self, auditor, orphans, db_session):
        auditor.cleanup()

        records = db_session.query(ConnectionAuditRecord).all()
        assert len(records) == 4
        assert {r.action for r in records} == {AuditAction.SUBSCRIPTION_ORPHAN_REPAIRED.value}
        by_account = {r.counterpart_account_id: r for r in records}
        assert by_account["widow"].details == {"category": "partner-deleted"}
        assert by_account["widow"].actor_account_id is None
        assert by_account["lonely"].before_state["lonely"]["subscription_type"] == "inherited"
        assert by_account["lonely"].after_state["lonely"]["subscription_type"] == "none"

    def test_direct_accounts_are_never_touched(self, auditor, orphans, db_session):
        auditor.cleanup()

        for account_id in ("valid-a", "anchor", "stranger"):
            assert _account(db_session, account_id).is_direct


# =============================================================================
# Orphaned pairing codes
# =============================================================================

class TestOrphanedCodes:

    def test_codes_of_missing_owners_are_deactivated(self, auditor, make_account, make_code, db_session):
        make_account("owner")
        make_code("11111111", "owner")
        make_code("22222222", "deleted-owner")
        make_code("33333333", "deleted-owner", is_active=False)

        report = auditor.cleanup_orphaned_codes()

        assert report.checked_count == 2
        assert report.deactivated_count == 1
        db_session.expire_all()
        assert db_session.get(PairingCode, "11111111").is_active is True
        orphaned = db_session.get(PairingCode, "22222222")
        assert orphaned.is_active is False
        assert orphaned.deactivation_reason == DeactivationReason.OWNER_NOT_FOUND.value

    def test_nothing_to_clean(self, auditor):
        report = auditor.cleanup_orphaned_codes()

        assert report.checked_count == 0
        assert report.deactivated_count == 0


# =============================================================================
# Scheduled job
# =============================================================================

class TestOrphanCleanupJob:

    def test_dry_run_only_diagnoses(self, db_session, orphans):
        stats = run_orphan_cleanup(db_session, dry_run=True)

        assert stats.dry_run is True
        assert stats.violation_count == 4
        assert stats.cleaned_count == 0
        assert _account(db_session, "lonely").is_inherited

    def test_live_run_repairs(self, db_session, orphans, make_code):
        make_code("22222222", "deleted-owner")

        stats = run_orphan_cleanup(db_session, dry_run=False)

        assert stats.violation_count == 4
        assert stats.cleaned_count == 4
        assert stats.codes_deactivated == 1
        assert stats.completed_at is not None
        assert stats.to_dict()["summary"]["no-partner"] == 1
