"""
Caller identity and admin authorization.

SECURITY:
- The acting account id comes ONLY from the verified bearer token `sub`
  claim, never from the request body or query string
- Admin maintenance endpoints require a shared secret compared in constant
  time; when no secret is configured every admin call is denied
"""

import hmac
import logging
import os
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from couplelink.config.pairing import get_admin_secret
from couplelink.platform.errors import AuthenticationError, PermissionDeniedError

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


class AuthConfig(BaseModel):
    """Bearer token verification settings."""
    jwt_secret: str
    algorithm: str = "HS256"
    audience: Optional[str] = None
    issuer: Optional[str] = None

    @classmethod
    def from_env(cls) -> "AuthConfig":
        jwt_secret = os.getenv("AUTH_JWT_SECRET")
        if not jwt_secret:
            raise AuthenticationError("Authentication is not configured")
        return cls(
            jwt_secret=jwt_secret,
            algorithm=os.getenv("AUTH_JWT_ALGORITHM", "HS256"),
            audience=os.getenv("AUTH_JWT_AUDIENCE") or None,
            issuer=os.getenv("AUTH_JWT_ISSUER") or None,
        )


class CallerIdentity(BaseModel):
    """Authenticated caller."""
    account_id: str


def decode_caller_token(token: str, config: AuthConfig) -> CallerIdentity:
    """
    Verify a bearer token and extract the caller.

    Raises:
        AuthenticationError: token missing a subject, expired or invalid
    """
    options = {"require": ["sub", "exp"]}
    try:
        payload = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=[config.algorithm],
            audience=config.audience,
            issuer=config.issuer,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid bearer token", extra={"error": str(e)})
        raise AuthenticationError("Invalid token")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthenticationError("Token has no subject")
    return CallerIdentity(account_id=subject)


def get_auth_config() -> AuthConfig:
    return AuthConfig.from_env()


def get_caller_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    config: AuthConfig = Depends(get_auth_config),
) -> CallerIdentity:
    """FastAPI dependency resolving the authenticated caller."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError()

    identity = decode_caller_token(credentials.credentials, config)
    request.state.account_id = identity.account_id
    return identity


def require_admin_secret(provided: Optional[str], correlation_id: Optional[str] = None) -> None:
    """
    Check an admin secret supplied with a maintenance request.

    Raises:
        PermissionDeniedError: secret unset, missing or wrong
    """
    expected = get_admin_secret()
    if not expected or not provided or not hmac.compare_digest(
        provided.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning(
            "Admin secret rejected",
            extra={
                "action": "admin.secret_rejected",
                "configured": bool(expected),
                "correlation_id": correlation_id,
            }
        )
        raise PermissionDeniedError("Invalid admin credentials")
