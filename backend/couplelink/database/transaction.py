"""
Atomic units of work with bounded retry on write conflicts.

Every mutation in the pairing services goes through run_in_transaction.
The work callable reads and writes through the session; the runner commits
exactly once. When a concurrent writer wins (a version mismatch surfaces as
StaleDataError, a lock or serialization failure as OperationalError) the
attempt is rolled back and the work runs again from a clean session.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from couplelink.config.pairing import TRANSACTION_BACKOFF_SECONDS, TRANSACTION_MAX_ATTEMPTS
from couplelink.platform.errors import ConcurrentModificationError, InternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (StaleDataError, OperationalError)


def run_in_transaction(
    session: Session,
    work: Callable[[Session], T],
    *,
    operation: str = "transaction",
    max_attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    correlation_id: Optional[str] = None,
) -> T:
    """
    Run work(session) and commit, retrying on write conflicts.

    Args:
        session: Session owned by the caller
        work: Callable doing all reads and writes; must re-read state on each call
        operation: Name used in logs
        max_attempts: Attempts before giving up (default TRANSACTION_MAX_ATTEMPTS)
        backoff_seconds: Linear backoff unit between attempts

    Returns:
        Whatever work returned on the committed attempt

    Raises:
        ConcurrentModificationError: every attempt lost a write race
        InternalError: non-retryable storage failure
        AppError: raised by work; the transaction is rolled back first
    """
    attempts = max_attempts if max_attempts is not None else TRANSACTION_MAX_ATTEMPTS
    backoff = backoff_seconds if backoff_seconds is not None else TRANSACTION_BACKOFF_SECONDS

    for attempt in range(1, attempts + 1):
        try:
            result = work(session)
            session.commit()
            return result

        except RETRYABLE_ERRORS as e:
            session.rollback()
            logger.warning(
                "Transaction conflict",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "error_type": type(e).__name__,
                    "correlation_id": correlation_id,
                }
            )
            if attempt < attempts and backoff > 0:
                time.sleep(backoff * attempt)

        except SQLAlchemyError as e:
            session.rollback()
            logger.exception(
                "Transaction failed",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "correlation_id": correlation_id,
                }
            )
            raise InternalError("Storage failure") from e

        except Exception:
            session.rollback()
            raise

    raise ConcurrentModificationError(attempts=attempts)
