"""
Tests for the rate limit window sweep job.
"""

from datetime import timedelta

import pytest

from couplelink.models.base import utcnow
from couplelink.models.rate_limit_window import RateLimitWindow
from couplelink.workers.rate_limit_sweep_job import run_sweep


@pytest.fixture
def windows(db_session):
    now = utcnow()
    rows = [
        RateLimitWindow(account_id="a", operation="connect", window_bucket=1, count=3,
                        last_call_at=now - timedelta(hours=48)),
        RateLimitWindow(account_id="a", operation="issue_code", window_bucket=2, count=1,
                        last_call_at=now - timedelta(hours=30)),
        RateLimitWindow(account_id="b", operation="connect", window_bucket=1, count=2,
                        last_call_at=now - timedelta(hours=25)),
        RateLimitWindow(account_id="b", operation="connect", window_bucket=9, count=1,
                        last_call_at=now - timedelta(minutes=5)),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return now


class TestRunSweep:

    def test_dry_run_counts_without_deleting(self, db_session, windows):
        stats = run_sweep(db_session, dry_run=True, retention_hours=24, now=windows)

        assert stats.dry_run is True
        assert stats.windows_eligible == 3
        assert stats.windows_deleted == 0
        assert stats.batches == 0
        assert db_session.query(RateLimitWindow).count() == 4

    def test_live_run_deletes_in_batches(self, db_session, windows):
        stats = run_sweep(db_session, dry_run=False, retention_hours=24, batch_size=1, now=windows)

        assert stats.windows_eligible == 3
        assert stats.windows_deleted == 3
        assert stats.batches == 3
        remaining = db_session.query(RateLimitWindow).all()
        assert [(w.account_id, w.window_bucket) for w in remaining] == [("b", 9)]

    def test_nothing_eligible(self, db_session, windows):
        stats = run_sweep(db_session, dry_run=False, retention_hours=72, now=windows)

        assert stats.windows_eligible == 0
        assert stats.windows_deleted == 0
        assert stats.completed_at is not None

    def test_stats_to_dict(self, db_session, windows):
        data = run_sweep(db_session, dry_run=False, retention_hours=24, now=windows).to_dict()

        assert data["windows_deleted"] == 3
        assert data["dry_run"] is False
        assert data["duration_seconds"] >= 0
