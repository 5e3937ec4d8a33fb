"""
Identity provider backend API client.

The identity provider owns users; this service only needs:
- the user's name and email (billing data for the payment gateway)
- to publish the subscription state into the user's public metadata, so the
  frontend can read the plan from the session without calling us
"""

import logging
from typing import Any

import httpx
from pydantic import BaseModel

from sahab.config import IdentityConfig
from sahab.exceptions import ProviderError
from sahab.resilience.circuit_breakers import identity_breaker, provider_call

logger = logging.getLogger(__name__)

PROVIDER_NAME = "identity"


class IdentityUser(BaseModel):
    id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    public_metadata: dict[str, Any] = {}


class IdentityClient:
    """Async client for the identity provider's backend API (Clerk-compatible)."""

    def __init__(self, config: IdentityConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout_seconds)
        )
        self._owns_client = http_client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.secret_key}",
            "Content-Type": "application/json",
        }

    async def get_user(self, user_id: str) -> IdentityUser:
        """
        Fetch a user profile.

        Raises:
            ProviderError: Provider unreachable, not configured, or user unknown
        """
        if not self.config.is_configured:
            raise ProviderError("Identity provider not configured", provider=PROVIDER_NAME)

        url = f"{self.config.base_url.rstrip('/')}/users/{user_id}"
        with provider_call(identity_breaker, PROVIDER_NAME, "get_user"):
            response = await self._client.get(url, headers=self._headers())
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as e:
                raise ProviderError(
                    "Identity get_user returned invalid JSON", provider=PROVIDER_NAME
                ) from e

        email = None
        addresses = data.get("email_addresses") or []
        primary_id = data.get("primary_email_address_id")
        for address in addresses:
            if primary_id is None or address.get("id") == primary_id:
                email = address.get("email_address")
                break
        if email is None:
            email = data.get("email")

        return IdentityUser(
            id=str(data.get("id", user_id)),
            email=email,
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            public_metadata=data.get("public_metadata") or {},
        )

    async def update_user_metadata(self, user_id: str, public_metadata: dict[str, Any]) -> None:
        """
        Merge keys into the user's public metadata.

        Raises:
            ProviderError: Provider unreachable or not configured
        """
        if not self.config.is_configured:
            raise ProviderError("Identity provider not configured", provider=PROVIDER_NAME)

        url = f"{self.config.base_url.rstrip('/')}/users/{user_id}/metadata"
        with provider_call(identity_breaker, PROVIDER_NAME, "update_metadata"):
            response = await self._client.patch(
                url,
                json={"public_metadata": public_metadata},
                headers=self._headers(),
            )
            response.raise_for_status()

        logger.info(
            "Identity metadata updated",
            extra={"user_id": user_id, "keys": sorted(public_metadata)},
        )


# Global instance
_identity_client: IdentityClient | None = None


def get_identity_client(config: IdentityConfig) -> IdentityClient:
    """Get or create the identity client singleton."""
    global _identity_client
    if _identity_client is None:
        _identity_client = IdentityClient(config)
    return _identity_client


async def close_identity_client() -> None:
    """Close and drop the singleton (application shutdown)."""
    global _identity_client
    if _identity_client is not None:
        await _identity_client.close()
        _identity_client = None
