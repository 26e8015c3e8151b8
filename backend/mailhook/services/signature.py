"""
HMAC signature verification for inbound webhook deliveries.

The sender signs the exact request body with HMAC-SHA256 keyed by the shared
webhook secret and sends the hex digest in the X-Signature header. The
digest must be computed over the raw bytes as received; parsing the JSON and
re-serializing it changes the bytes and breaks the signature.
"""

import hashlib
import hmac
from typing import Optional

_PREFIX = "sha256="


def compute_signature(raw_payload: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 of raw_payload keyed by secret."""
    return hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()


def _decode_signature(provided_signature: str) -> Optional[bytes]:
    """Strip an optional "sha256=" prefix and decode the hex digest, or None if malformed."""
    value = provided_signature.strip()
    if value.lower().startswith(_PREFIX):
        value = value[len(_PREFIX):]
    if not value:
        return None
    try:
        return bytes.fromhex(value)
    except ValueError:
        return None


def verify_signature(
    raw_payload: bytes,
    provided_signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """
    Check that provided_signature is the HMAC-SHA256 of raw_payload under secret.

    Returns False for a missing or empty signature, a missing secret, malformed
    hex, or a digest mismatch. The comparison is constant-time.
    """
    if not provided_signature or not secret:
        return False

    provided = _decode_signature(provided_signature)
    if provided is None:
        return False

    expected = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).digest()
    return hmac.compare_digest(expected, provided)
