"""Webhook HMAC-SHA256 signature verification."""

import hashlib
import hmac
from typing import Optional

from threadgate.engine.errors import SignatureInvalid


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> None:
    """
    Verify a delivery signature in constant time.

    Accepts a bare hex digest or the "sha256=<hex>" form.

    Raises:
        SignatureInvalid: signature missing or mismatched
    """
    if not signature:
        raise SignatureInvalid("Missing webhook signature")

    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]

    expected = compute_signature(secret, body)
    if not hmac.compare_digest(expected.encode(), provided.lower().encode("utf-8", "replace")):
        raise SignatureInvalid()
