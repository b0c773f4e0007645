"""
Entitlement verifier client.

Purchase receipts and store tokens are opaque here: the verifier service
answers whether a proof currently grants premium access to an account.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class EntitlementVerificationError(Exception):
    """The verifier could not give an answer."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EntitlementVerifier(ABC):
    @abstractmethod
    def verify(self, account_id: str, proof: str) -> bool:
        """
        Return True if proof is a currently valid entitlement for account_id.

        Raises:
            EntitlementVerificationError: verifier unreachable or failing
        """


class HttpEntitlementVerifier(EntitlementVerifier):
    """Entitlement verification service over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @classmethod
    def from_env(cls) -> "HttpEntitlementVerifier":
        base_url = os.getenv("ENTITLEMENT_API_URL")
        api_key = os.getenv("ENTITLEMENT_API_KEY")
        if not base_url or not api_key:
            raise EntitlementVerificationError("ENTITLEMENT_API_URL and ENTITLEMENT_API_KEY are required")
        return cls(base_url=base_url, api_key=api_key)

    def close(self) -> None:
        self._client.close()

    def verify(self, account_id: str, proof: str) -> bool:
        try:
            response = self._client.post(
                f"{self.base_url}/verify",
                json={"account_id": account_id, "proof": proof},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Entitlement verifier error",
                extra={"account_id": account_id, "status_code": e.response.status_code},
            )
            raise EntitlementVerificationError(
                f"Verifier returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Entitlement verifier unreachable",
                extra={"account_id": account_id, "error": str(e)},
            )
            raise EntitlementVerificationError(f"Verifier request failed: {e}") from e

        return bool(data.get("active", False))
