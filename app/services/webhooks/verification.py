from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of ``signature`` against the body.

    Accepts the bare hex digest or the ``sha256=<hex>`` form. An empty
    secret or signature never verifies.
    """
    if not secret or not signature:
        return False
    candidate = signature.strip()
    if candidate.lower().startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX):]
    expected = compute_signature(payload, secret)
    # Headers arrive latin-1 decoded and may hold non-ASCII text.
    return hmac.compare_digest(expected.encode("ascii"), candidate.lower().encode("utf-8", "surrogateescape"))
