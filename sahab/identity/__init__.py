"""Identity provider integration."""

from sahab.identity.client import IdentityClient, IdentityUser, get_identity_client

__all__ = ["IdentityClient", "IdentityUser", "get_identity_client"]
