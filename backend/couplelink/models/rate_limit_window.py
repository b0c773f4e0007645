"""
Per-account, per-operation rate limit counter for one fixed window.

Rows are created lazily on the first call in a window and removed by
couplelink.workers.rate_limit_sweep_job once last_call_at is older than the
retention period.
"""

from sqlalchemy import BigInteger, Column, Integer, String

from couplelink.db_base import Base
from couplelink.models.base import UTCDateTime, utcnow


class RateLimitWindow(Base):
    __tablename__ = "rate_limit_windows"

    account_id = Column(String(255), primary_key=True, comment="Caller account")
    operation = Column(String(64), primary_key=True, comment="Rate-limited operation name")
    window_bucket = Column(
        BigInteger,
        primary_key=True,
        autoincrement=False,
        comment="floor(epoch_minutes / window_minutes)"
    )
    count = Column(Integer, nullable=False, default=0, comment="Calls admitted in this window")
    last_call_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        index=True,
        comment="Last admitted call, drives the sweep"
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimitWindow(account_id={self.account_id}, operation={self.operation}, "
            f"window_bucket={self.window_bucket}, count={self.count})>"
        )
