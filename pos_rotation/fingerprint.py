"""
pos_rotation/fingerprint.py - One-way token fingerprints for logs and metrics.
"""
import hashlib
import hmac
import logging

log = logging.getLogger(__name__)

FINGERPRINT_PREFIX = "sha256:"
FINGERPRINT_HEX_CHARS = 16
UNKNOWN_FINGERPRINT = "sha256:unknown..."


def token_fingerprint(token: str, key: str) -> str:
    """Return a truncated HMAC-SHA256 of the token, e.g. ``sha256:0a1b2c3d4e5f6a7b...``."""
    if not token:
        return UNKNOWN_FINGERPRINT
    try:
        digest = hmac.new(key.encode(), token.encode(), hashlib.sha256).hexdigest()
    except (TypeError, AttributeError) as e:
        log.warning(f"Could not fingerprint token: {type(e).__name__}")
        return UNKNOWN_FINGERPRINT
    return f"{FINGERPRINT_PREFIX}{digest[:FINGERPRINT_HEX_CHARS]}..."


def mask_ref(secret_ref: str, visible: int = 12) -> str:
    """Prefix of an encrypted secret reference, safe for log lines."""
    if not secret_ref:
        return "(empty)"
    return secret_ref[:visible] + "..."
