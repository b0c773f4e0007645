"""
Orphan cleanup job: scheduled repair of orphaned inherited entitlements.

In dry-run mode only the diagnosis runs and the report is logged.
Otherwise inherited entitlements without a valid source are stripped and
pairing codes whose owner no longer exists are deactivated.

Run as a cron job:
    python -m couplelink.workers.orphan_cleanup_job
"""

import logging
import os
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from couplelink.database.session import get_session_factory
from couplelink.models.base import utcnow
from couplelink.services.orphan_auditor import OrphanAuditor

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

ORPHAN_CLEANUP_DRY_RUN = os.getenv("ORPHAN_CLEANUP_DRY_RUN", "true").lower() == "true"


@dataclass
class OrphanCleanupStats:
    started_at: datetime = field(default_factory=utcnow)
    dry_run: bool = ORPHAN_CLEANUP_DRY_RUN
    checked_count: int = 0
    violation_count: int = 0
    cleaned_count: int = 0
    codes_checked: int = 0
    codes_deactivated: int = 0
    summary: dict = field(default_factory=dict)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "dry_run": self.dry_run,
            "checked_count": self.checked_count,
            "violation_count": self.violation_count,
            "cleaned_count": self.cleaned_count,
            "codes_checked": self.codes_checked,
            "codes_deactivated": self.codes_deactivated,
            "summary": self.summary,
        }


def run_orphan_cleanup(db_session: Session, dry_run: bool = ORPHAN_CLEANUP_DRY_RUN) -> OrphanCleanupStats:
    """
    Diagnose (dry run) or repair orphaned entitlements and pairing codes.

    Returns:
        OrphanCleanupStats with results
    """
    stats = OrphanCleanupStats(dry_run=dry_run)
    auditor = OrphanAuditor(db_session, correlation_id=f"orphan-cleanup-{uuid.uuid4()}")

    report = auditor.diagnose()
    stats.checked_count = report.checked_count
    stats.violation_count = len(report.violations)
    stats.summary = report.summary

    if dry_run:
        logger.info("[DRY RUN] Would repair %d orphaned entitlements", stats.violation_count)
        db_session.rollback()
        stats.completed_at = utcnow()
        return stats

    cleanup = auditor.cleanup()
    stats.checked_count = cleanup.checked_count
    stats.cleaned_count = cleanup.cleaned_count

    codes = auditor.cleanup_orphaned_codes()
    stats.codes_checked = codes.checked_count
    stats.codes_deactivated = codes.deactivated_count

    stats.completed_at = utcnow()
    return stats


def main():
    """Entry point for the orphan cleanup job."""
    logger.info("Orphan Cleanup Job starting", extra={"dry_run": ORPHAN_CLEANUP_DRY_RUN})

    session = get_session_factory()()
    try:
        stats = run_orphan_cleanup(session, dry_run=ORPHAN_CLEANUP_DRY_RUN)
        logger.info("Orphan Cleanup Job stats", extra=stats.to_dict())
    except Exception as exc:
        logger.error(
            "Orphan Cleanup Job failed",
            extra={"error": str(exc)},
            exc_info=True,
        )
        sys.exit(1)
    finally:
        session.close()

    logger.info("Orphan Cleanup Job finished")


if __name__ == "__main__":
    main()
