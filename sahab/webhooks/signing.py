"""
Webhook signature verification for payment gateway callbacks.

Security:
- HMAC-SHA512 over the exact raw request body, hex encoded
- Constant-time comparison
- Verification happens before the body is parsed, so a tampered body is
  rejected before any payment lookup
"""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


class WebhookSigner:
    """
    Signs and verifies gateway webhook bodies with a shared secret.

    The gateway computes ``hex(HMAC-SHA512(secret, raw_body))`` and sends it
    in the ``X-HMAC`` / ``hmac`` header (or ``?hmac=`` query parameter).
    """

    def __init__(self, secret: str):
        """
        Initialize webhook signer.

        Args:
            secret: Shared HMAC secret from the gateway dashboard

        Raises:
            ValueError: Empty secret
        """
        if not secret:
            raise ValueError("Webhook HMAC secret must not be empty")

        self.secret = secret.encode("utf-8")

    def sign_payload(self, payload: bytes) -> str:
        """
        Sign a raw body.

        Args:
            payload: Raw request body bytes

        Returns:
            str: Lowercase hex digest
        """
        return hmac.new(self.secret, payload, hashlib.sha512).hexdigest()

    def verify_signature(self, payload: bytes, signature: str | None) -> bool:
        """
        Verify a raw body against the signature the gateway sent.

        Args:
            payload: Raw request body bytes, exactly as received
            signature: Hex signature from the request

        Returns:
            bool: True only if the signature matches
        """
        if not signature:
            return False

        expected = self.sign_payload(payload)
        provided = signature.strip().lower()

        if not hmac.compare_digest(expected, provided):
            logger.warning(
                "Webhook signature mismatch",
                extra={"body_bytes": len(payload), "signature_length": len(provided)},
            )
            return False

        return True
