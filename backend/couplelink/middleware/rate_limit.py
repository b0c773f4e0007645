"""
Per-account fixed-window rate limiting for pairing operations.

Each operation has a static policy (max_calls per window_minutes, see
couplelink.config.rate_limits). A call lands in
``window_bucket = floor(epoch_minutes / window_minutes)`` and is admitted
only if the bucket's counter is below max_calls; the check and the increment
happen in one atomic step on the backing store.

Features:
- Database backend (default): counters live in rate_limit_windows next to
  the rest of the pairing state
- Redis backend: counters in Redis hashes via an atomic Lua script
- ENFORCING / LOG_ONLY modes fixed at construction from configuration
- Returns 429 with Retry-After when a call is denied
- Emits rate_limit.triggered / rate_limit.would_deny security events via
  structured logging
- Graceful degradation if the store is unavailable (allow request, log
  warning) unless the limiter is strict

Configuration (environment variables):
- RATE_LIMIT_ENABLED:  Kill switch (default: "true")
- RATE_LIMIT_MODE:     "enforcing" (default) or "log_only"
- RATE_LIMIT_STRICT:   Fail closed when the store is down (default: "false")
- RATE_LIMIT_BACKEND:  "database" (default) or "redis"
- REDIS_URL:           Redis connection URL for the redis backend

Usage (FastAPI dependency injection):
    from couplelink.middleware.rate_limit import rate_limit_dependency

    @router.post("/api/pairing/connect")
    async def connect(
        _rate_limit=Depends(rate_limit_dependency("connect")),
    ):
        ...

SECURITY: the account id is always the authenticated caller from the bearer
token, never a value from the request body or query parameters.
"""

import enum
import logging
import math
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import redis
from fastapi import Depends, Request
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from couplelink.config.rate_limits import (
    RATE_LIMIT_POLICIES,
    RateLimitPolicy,
    get_rate_limit_backend,
    get_rate_limit_mode,
    is_rate_limit_enabled,
    is_strict_mode,
)
from couplelink.models.rate_limit_window import RateLimitWindow
from couplelink.platform.auth import CallerIdentity, get_caller_identity
from couplelink.platform.errors import RateLimitError, ServiceUnavailableError

logger = logging.getLogger(__name__)

# Redis keys outlive the longest window; the sweep handles the database
REDIS_KEY_TTL_SECONDS = 24 * 60 * 60


class RateLimitMode(str, enum.Enum):
    ENFORCING = "enforcing"
    LOG_ONLY = "log_only"


class RateLimitStoreError(Exception):
    """The counter store could not be read or written."""


# ---------------------------------------------------------------------------
# Rate limit result dataclass
# ---------------------------------------------------------------------------

@dataclass
class RateLimitResult:
    """
    Result of a rate limit check.

    Attributes:
        allowed:        Whether the call may proceed.
        count:          Calls admitted in the current window, including this one.
        limit:          Maximum calls per window.
        window_minutes: Window length.
        retry_after:    Seconds until the window resets (0 if allowed).
        reset_at:       Unix timestamp when the current window ends.
        enforced:       False when the decision was not enforced (log-only,
                        kill switch, or store unavailable).
    """

    allowed: bool
    count: int
    limit: int
    window_minutes: int
    retry_after: int
    reset_at: float
    enforced: bool = True

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


def window_bucket_for(timestamp: float, window_minutes: int) -> int:
    """floor(epoch_minutes / window_minutes)."""
    return int(timestamp // 60) // window_minutes


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class RateLimitBackend(ABC):
    """Atomic conditional counter store."""

    @abstractmethod
    def increment_if_below(
        self,
        account_id: str,
        operation: str,
        window_bucket: int,
        max_calls: int,
        now: datetime,
    ) -> Tuple[bool, int]:
        """
        Increment the window counter only if it is below max_calls.

        Returns:
            (admitted, count after the call)

        Raises:
            RateLimitStoreError: store unreachable or failing
        """


class DatabaseRateLimitBackend(RateLimitBackend):
    """
    Counters in the rate_limit_windows table.

    Uses its own short-lived session per call so a limiter decision is
    committed independently of the request's unit of work. The conditional
    UPDATE is the atomic read-modify-write; the first call in a window
    inserts the row and retries as an UPDATE if another caller won the insert.
    """

    def __init__(self, session_factory: sessionmaker, insert_attempts: int = 3):
        self._session_factory = session_factory
        self._insert_attempts = insert_attempts

    def increment_if_below(self, account_id, operation, window_bucket, max_calls, now):
        key_filter = (
            RateLimitWindow.account_id == account_id,
            RateLimitWindow.operation == operation,
            RateLimitWindow.window_bucket == window_bucket,
        )
        session = self._session_factory()
        try:
            for _ in range(self._insert_attempts):
                result = session.execute(
                    update(RateLimitWindow)
                    .where(*key_filter, RateLimitWindow.count < max_calls)
                    .values(count=RateLimitWindow.count + 1, last_call_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    count = session.execute(
                        select(RateLimitWindow.count).where(*key_filter)
                    ).scalar_one()
                    session.commit()
                    return True, count

                existing = session.execute(
                    select(RateLimitWindow.count).where(*key_filter)
                ).scalar_one_or_none()
                if existing is not None:
                    session.rollback()
                    return False, existing

                session.add(RateLimitWindow(
                    account_id=account_id,
                    operation=operation,
                    window_bucket=window_bucket,
                    count=1,
                    last_call_at=now,
                ))
                try:
                    session.commit()
                    return True, 1
                except IntegrityError:
                    # Another caller created the window first
                    session.rollback()

            raise RateLimitStoreError("Could not create rate limit window")

        except SQLAlchemyError as e:
            session.rollback()
            raise RateLimitStoreError(str(e)) from e
        finally:
            session.close()


class RedisRateLimitBackend(RateLimitBackend):
    """
    Counters in Redis hashes keyed per window.

    The Lua script makes check-and-increment atomic on the server.
    """

    INCREMENT_SCRIPT = """
local current = tonumber(redis.call('HGET', KEYS[1], 'count') or '0')
if current >= tonumber(ARGV[1]) then
    return {0, current}
end
current = redis.call('HINCRBY', KEYS[1], 'count', 1)
redis.call('HSET', KEYS[1], 'last_call_at', ARGV[2])
redis.call('EXPIRE', KEYS[1], ARGV[3])
return {1, current}
"""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    def _get_redis(self) -> redis.Redis:
        """
        Get or create a Redis connection.

        The connection is created lazily on first use so that the module
        can be imported even when Redis is not yet available.
        """
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._redis

    @staticmethod
    def key_for(account_id: str, operation: str, window_bucket: int) -> str:
        return f"ratelimit:{operation}:{account_id}:{window_bucket}"

    def increment_if_below(self, account_id, operation, window_bucket, max_calls, now):
        key = self.key_for(account_id, operation, window_bucket)
        try:
            admitted, count = self._get_redis().eval(
                self.INCREMENT_SCRIPT,
                1,
                key,
                max_calls,
                now.isoformat(),
                REDIS_KEY_TTL_SECONDS,
            )
        except redis.RedisError as e:
            raise RateLimitStoreError(str(e)) from e
        return bool(int(admitted)), int(count)


# ---------------------------------------------------------------------------
# RateLimiter class
# ---------------------------------------------------------------------------

class RateLimiter:
    """
    Fixed-window limiter over a pluggable backend.

    In LOG_ONLY mode every call is allowed, but calls that would have been
    denied are logged as rate_limit.would_deny.

    If the store is unavailable the limiter degrades gracefully: calls are
    allowed and a warning is logged. A strict limiter raises
    ServiceUnavailableError instead.
    """

    def __init__(
        self,
        backend: RateLimitBackend,
        mode: RateLimitMode = RateLimitMode.ENFORCING,
        strict: bool = False,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.mode = mode
        self.strict = strict
        self.policies = policies if policies is not None else RATE_LIMIT_POLICIES
        self._clock = clock

    def check_and_increment(self, account_id: str, operation: str) -> RateLimitResult:
        """
        Count one call by account_id to operation and decide whether it may run.

        Raises:
            KeyError: operation has no policy
            ServiceUnavailableError: strict limiter and the store is down
        """
        policy = self.policies[operation]
        now_ts = self._clock()
        bucket = window_bucket_for(now_ts, policy.window_minutes)
        reset_at = float((bucket + 1) * policy.window_seconds)
        retry_after = max(1, math.ceil(reset_at - now_ts))

        try:
            admitted, count = self.backend.increment_if_below(
                account_id,
                operation,
                bucket,
                policy.max_calls,
                datetime.fromtimestamp(now_ts, tz=timezone.utc),
            )
        except RateLimitStoreError as exc:
            if self.strict:
                logger.error(
                    "Rate limit store unavailable - rejecting request (strict)",
                    extra={"error": str(exc), "operation": operation, "account_id": account_id},
                )
                raise ServiceUnavailableError("Rate limiting unavailable")
            logger.warning(
                "Rate limit store unavailable - allowing request (fail-open)",
                extra={
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                    "operation": operation,
                    "account_id": account_id,
                },
            )
            return RateLimitResult(
                allowed=True,
                count=0,
                limit=policy.max_calls,
                window_minutes=policy.window_minutes,
                retry_after=0,
                reset_at=reset_at,
                enforced=False,
            )

        if admitted:
            return RateLimitResult(
                allowed=True,
                count=count,
                limit=policy.max_calls,
                window_minutes=policy.window_minutes,
                retry_after=0,
                reset_at=reset_at,
            )

        if self.mode == RateLimitMode.LOG_ONLY:
            logger.warning(
                "Rate limit would deny",
                extra={
                    "action": "rate_limit.would_deny",
                    "account_id": account_id,
                    "operation": operation,
                    "limit": policy.max_calls,
                    "window_minutes": policy.window_minutes,
                    "count": count,
                },
            )
            return RateLimitResult(
                allowed=True,
                count=count,
                limit=policy.max_calls,
                window_minutes=policy.window_minutes,
                retry_after=0,
                reset_at=reset_at,
                enforced=False,
            )

        return RateLimitResult(
            allowed=False,
            count=count,
            limit=policy.max_calls,
            window_minutes=policy.window_minutes,
            retry_after=retry_after,
            reset_at=reset_at,
        )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_rate_limiter_instance: Optional[RateLimiter] = None


def build_rate_limiter() -> RateLimiter:
    """Build a limiter from RATE_LIMIT_* configuration."""
    backend_name = get_rate_limit_backend()
    if backend_name == "redis":
        backend: RateLimitBackend = RedisRateLimitBackend(
            os.getenv("REDIS_URL", "redis://redis:6379/0")
        )
    else:
        from couplelink.database.session import get_session_factory
        backend = DatabaseRateLimitBackend(get_session_factory())

    try:
        mode = RateLimitMode(get_rate_limit_mode())
    except ValueError:
        logger.warning(
            "Unknown RATE_LIMIT_MODE, enforcing",
            extra={"mode": get_rate_limit_mode()},
        )
        mode = RateLimitMode.ENFORCING

    return RateLimiter(backend=backend, mode=mode, strict=is_strict_mode())


def get_rate_limiter() -> RateLimiter:
    """Return the module-level :class:`RateLimiter` singleton."""
    global _rate_limiter_instance
    if _rate_limiter_instance is None:
        _rate_limiter_instance = build_rate_limiter()
    return _rate_limiter_instance


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

def rate_limit_dependency(operation: str) -> Callable:
    """
    Create a FastAPI dependency that enforces the policy for ``operation``.

    The limiter is resolved through ``get_rate_limiter`` so tests can
    override it with ``app.dependency_overrides``.
    """
    policy = RATE_LIMIT_POLICIES[operation]

    def _dependency(
        request: Request,
        identity: CallerIdentity = Depends(get_caller_identity),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        # Kill switch: skip rate limiting entirely when disabled.
        if not is_rate_limit_enabled():
            return RateLimitResult(
                allowed=True,
                count=0,
                limit=policy.max_calls,
                window_minutes=policy.window_minutes,
                retry_after=0,
                reset_at=time.time() + policy.window_seconds,
                enforced=False,
            )

        result = limiter.check_and_increment(identity.account_id, operation)

        if not result.allowed:
            logger.warning(
                "Rate limit triggered",
                extra={
                    "action": "rate_limit.triggered",
                    "account_id": identity.account_id,
                    "operation": operation,
                    "limit": result.limit,
                    "window_minutes": result.window_minutes,
                    "retry_after": result.retry_after,
                    "reset_at": result.reset_at,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            raise RateLimitError(
                "Too many requests. Please wait before retrying.",
                retry_after=result.retry_after,
                operation=operation,
            )

        return result

    return _dependency
