"""
Webhook signature verification.

Providers sign the raw request body with HMAC-SHA256 over a shared secret
and send the hex digest in a header. Verification runs on the raw bytes,
before any JSON parsing, with a constant-time comparison.
"""

import hashlib
import hmac


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """
    Check a webhook signature.

    Args:
        raw_body: Request body exactly as received
        signature: Header value; an optional "sha256=" prefix is accepted
        secret: Shared webhook secret

    Returns:
        True only for a non-empty secret and a matching signature
    """
    if not secret or not signature:
        return False

    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]

    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, provided.lower())
