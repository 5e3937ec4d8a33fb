"""
FastAPI dependencies for authentication.

Security:
- Session JWTs issued by the identity provider are verified locally
  (signature, expiry, optional issuer); no network call per request
- user_id comes only from the verified ``sub`` claim, never from the body
- user_id is bound into the logging context for the rest of the request

Performance:
- Verified tokens cached in-memory (TTLCache) and never trusted past ``exp``
"""

import logging
import time

from cachetools import TTLCache
from fastapi import Depends, Header, Request
from jose import JWTError, jwt

from sahab.config import IdentityConfig, get_settings
from sahab.exceptions import AuthError
from sahab.observability.logging import set_user_id

logger = logging.getLogger(__name__)

# Tokens are dropped from the cache this many seconds before they expire
EXPIRY_MARGIN_SECONDS = 5


class TokenVerifier:
    """
    Verify identity-provider session tokens.

    Format: ``Authorization: Bearer <jwt>``, or the provider's ``__session``
    cookie for same-site browser calls.
    """

    def __init__(self, config: IdentityConfig):
        """
        Initialize token verifier.

        Args:
            config: Identity configuration (verification key, algorithms, issuer)
        """
        self.config = config
        # Format: {token: (user_id, exp_timestamp)}
        self._cache: TTLCache = TTLCache(
            maxsize=config.token_cache_max_size,
            ttl=max(config.token_cache_ttl_seconds, 1),
        )

    def verify(self, token: str) -> str:
        """
        Verify a session token and return its user id.

        Raises:
            AuthError: Token invalid, expired, or verification not configured
        """
        cached = self._cache.get(token)
        if cached is not None:
            user_id, expires_at = cached
            if expires_at is None or time.time() < expires_at - EXPIRY_MARGIN_SECONDS:
                return user_id
            self._cache.pop(token, None)

        if not self.config.jwt_key:
            logger.error("Session token received but IDENTITY_JWT_KEY is not configured")
            raise AuthError("Authentication is not available")

        options = {"verify_aud": False}
        try:
            claims = jwt.decode(
                token,
                self.config.jwt_key,
                algorithms=self.config.algorithms_list,
                issuer=self.config.jwt_issuer,
                options=options,
            )
        except JWTError as e:
            logger.info("Session token rejected", extra={"reason": type(e).__name__})
            raise AuthError("Invalid or expired session token") from e

        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise AuthError("Session token has no subject")

        expires_at = claims.get("exp")
        if self.config.token_cache_ttl_seconds > 0:
            self._cache[token] = (user_id, expires_at)

        return user_id

    def clear_cache(self) -> None:
        self._cache.clear()


# Global instance
_verifier: TokenVerifier | None = None


def get_token_verifier() -> TokenVerifier:
    """Get or create the token verifier singleton."""
    global _verifier
    if _verifier is None:
        _verifier = TokenVerifier(get_settings().identity)
    return _verifier


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Pull the token out of an Authorization header.

    Raises:
        AuthError: Header present but not in ``Bearer <token>`` form
    """
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Invalid Authorization header format. Use: 'Bearer <token>'")
    return parts[1]


async def get_current_user_id(
    request: Request,
    authorization: str | None = Header(None, alias="Authorization"),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> str:
    """
    Authenticated user id for the current request.

    Returns:
        str: Identity-provider user id (``sub`` claim)

    Raises:
        AuthError: Missing or invalid session token (401)

    Usage:
        @router.get("/usage/current")
        async def current(user_id: str = Depends(get_current_user_id)):
            ...
    """
    token = extract_bearer_token(authorization) or request.cookies.get("__session")
    if not token:
        raise AuthError("Authentication required")

    user_id = verifier.verify(token)

    # Read by the rate limiter key function and the logging middleware
    request.state.user_id = user_id
    set_user_id(user_id)
    return user_id
