from __future__ import annotations

import hashlib
import hmac


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check an HMAC-SHA256 hex signature over the exact request bytes."""
    if not secret or not signature:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))
