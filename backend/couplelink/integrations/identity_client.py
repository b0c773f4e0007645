"""
Identity provider client.

The authentication identity of an account lives outside our database. Account
deletion removes it through this client once the data cascade has committed.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class IdentityProviderError(Exception):
    """Error from the identity provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class IdentityProvider(ABC):
    @abstractmethod
    def delete_identity(self, account_id: str) -> None:
        """
        Remove the authentication identity for account_id.

        Deleting an identity that no longer exists succeeds.

        Raises:
            IdentityProviderError: the provider refused or could not be reached
        """


class HttpIdentityProvider(IdentityProvider):
    """Identity provider admin API over HTTP."""

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
    def from_env(cls) -> "HttpIdentityProvider":
        base_url = os.getenv("IDENTITY_API_URL")
        api_key = os.getenv("IDENTITY_API_KEY")
        if not base_url or not api_key:
            raise IdentityProviderError("IDENTITY_API_URL and IDENTITY_API_KEY are required")
        return cls(base_url=base_url, api_key=api_key)

    def close(self) -> None:
        self._client.close()

    def delete_identity(self, account_id: str) -> None:
        url = f"{self.base_url}/identities/{account_id}"
        try:
            response = self._client.delete(url)
        except httpx.HTTPError as e:
            logger.error(
                "Identity provider unreachable",
                extra={"account_id": account_id, "error": str(e)},
            )
            raise IdentityProviderError(f"Identity provider request failed: {e}") from e

        if response.status_code == 404:
            logger.info("Identity already removed", extra={"account_id": account_id})
            return
        if response.status_code >= 400:
            logger.error(
                "Identity deletion rejected",
                extra={"account_id": account_id, "status_code": response.status_code},
            )
            raise IdentityProviderError(
                f"Identity deletion failed with status {response.status_code}",
                status_code=response.status_code,
            )
