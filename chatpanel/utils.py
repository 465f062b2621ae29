"""
Utility functions for the chat panel API.
"""

import hmac
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of a raw body, as the gateway computes it."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_hub_signature(body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """
    Verify an X-Hub-Signature-256 header.

    Args:
        body: Raw request body bytes
        signature_header: Header value, formatted ``sha256=<hex>``
        secret: App secret shared with the gateway

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature_header:
        logger.warning("Missing X-Hub-Signature-256 header")
        return False

    if not signature_header.startswith(SIGNATURE_PREFIX):
        logger.warning("Invalid signature format")
        return False

    logger.debug(f"Body length: {len(body)} bytes, signature: {signature_header[7:15]}...")

    expected = compute_signature(body, secret)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected, signature_header[len(SIGNATURE_PREFIX):])
    logger.info(f"Webhook signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def verify_api_key(provided: Optional[str], expected: str) -> bool:
    """Constant-time comparison of a panel API key; an empty expected key disables the check."""
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
