"""
Webhook payload signatures.

The provider signs each delivery with HMAC-SHA256 over the raw request body
using the secret bound to the registration; the hex digest travels in the
``X-Signature`` header (optionally prefixed with ``sha256=``).
"""
import hashlib
import hmac

SIGNATURE_HEADER = "X-Signature"
_PREFIX = "sha256="


def _as_bytes(value: bytes | str) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def compute_signature(raw_body: bytes | str, secret: str) -> str:
    """Hex HMAC-SHA256 of ``raw_body`` keyed with ``secret``."""
    return hmac.new(_as_bytes(secret), _as_bytes(raw_body), hashlib.sha256).hexdigest()


def verify(raw_body: bytes | str, supplied_signature: str | None, secret: str | None) -> bool:
    """
    Check ``supplied_signature`` against the body.

    Fails closed: a missing secret, an empty, malformed or mismatched
    signature all return False. Never raises.
    """
    try:
        if not supplied_signature or not secret:
            return False
        if not isinstance(supplied_signature, str):
            return False
        candidate = supplied_signature.strip()
        if candidate.lower().startswith(_PREFIX):
            candidate = candidate[len(_PREFIX):]
        if not candidate.isascii():
            return False
        expected = compute_signature(raw_body, secret)
        return hmac.compare_digest(candidate.lower(), expected)
    except (TypeError, ValueError, AttributeError, UnicodeError):
        return False
