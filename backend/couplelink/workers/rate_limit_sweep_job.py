"""
Rate limit window sweep: cron job deleting stale counters.

A window row is only needed while its window is open; rows whose last call
is older than RATE_LIMIT_WINDOW_RETENTION_HOURS (default 24h) are deleted in
batches.

CONSTRAINTS:
- Operates across all accounts
- Respects RATE_LIMIT_SWEEP_DRY_RUN for safe rollout
- Each batch is its own short transaction

Run as a cron job:
    python -m couplelink.workers.rate_limit_sweep_job
"""

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, tuple_
from sqlalchemy.orm import Session

from couplelink.config.rate_limits import SWEEP_BATCH_SIZE, SWEEP_DRY_RUN, WINDOW_RETENTION_HOURS
from couplelink.database.session import get_session_factory
from couplelink.models.base import utcnow
from couplelink.models.rate_limit_window import RateLimitWindow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class SweepStats:
    """Statistics from a sweep run."""

    started_at: datetime = field(default_factory=utcnow)
    cutoff: Optional[datetime] = None
    windows_eligible: int = 0
    windows_deleted: int = 0
    batches: int = 0
    dry_run: bool = SWEEP_DRY_RUN
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        duration = None
        if self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()

        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cutoff": self.cutoff.isoformat() if self.cutoff else None,
            "windows_eligible": self.windows_eligible,
            "windows_deleted": self.windows_deleted,
            "batches": self.batches,
            "dry_run": self.dry_run,
            "duration_seconds": duration,
        }


def count_expired_windows(db_session: Session, cutoff: datetime) -> int:
    stmt = (
        select(func.count())
        .select_from(RateLimitWindow)
        .where(RateLimitWindow.last_call_at < cutoff)
    )
    return db_session.execute(stmt).scalar() or 0


def run_sweep(
    db_session: Session,
    dry_run: bool = SWEEP_DRY_RUN,
    retention_hours: int = WINDOW_RETENTION_HOURS,
    batch_size: int = SWEEP_BATCH_SIZE,
    now: Optional[datetime] = None,
) -> SweepStats:
    """
    Delete windows whose last call is older than the retention period.

    Args:
        db_session: Database session
        dry_run: If True, only count without deleting
        retention_hours: Age (by last_call_at) after which a window is deleted
        batch_size: Rows per delete transaction

    Returns:
        SweepStats with results
    """
    stats = SweepStats(dry_run=dry_run)
    stats.cutoff = (now or utcnow()) - timedelta(hours=retention_hours)

    stats.windows_eligible = count_expired_windows(db_session, stats.cutoff)
    if stats.windows_eligible == 0 or dry_run:
        if dry_run:
            logger.info("[DRY RUN] Would delete %d rate limit windows", stats.windows_eligible)
        stats.completed_at = utcnow()
        return stats

    key_columns = (RateLimitWindow.account_id, RateLimitWindow.operation, RateLimitWindow.window_bucket)
    while True:
        keys = db_session.execute(
            select(*key_columns)
            .where(RateLimitWindow.last_call_at < stats.cutoff)
            .limit(batch_size)
        ).all()
        if not keys:
            break

        result = db_session.execute(
            delete(RateLimitWindow)
            .where(tuple_(*key_columns).in_([tuple(k) for k in keys]))
            .where(RateLimitWindow.last_call_at < stats.cutoff)
            .execution_options(synchronize_session=False)
        )
        db_session.commit()
        stats.windows_deleted += result.rowcount
        stats.batches += 1

        if len(keys) < batch_size:
            break

    stats.completed_at = utcnow()
    logger.info(
        "Rate limit sweep completed",
        extra={"eligible": stats.windows_eligible, "deleted": stats.windows_deleted},
    )
    return stats


def main():
    """Entry point for the rate limit sweep job."""
    logger.info("Rate Limit Sweep Job starting", extra={"dry_run": SWEEP_DRY_RUN})

    session = get_session_factory()()
    try:
        stats = run_sweep(session, dry_run=SWEEP_DRY_RUN)
        logger.info("Rate Limit Sweep Job stats", extra=stats.to_dict())
    except Exception as exc:
        session.rollback()
        logger.error(
            "Rate Limit Sweep Job failed",
            extra={"error": str(exc)},
            exc_info=True,
        )
        sys.exit(1)
    finally:
        session.close()

    logger.info("Rate Limit Sweep Job finished")


if __name__ == "__main__":
    main()
