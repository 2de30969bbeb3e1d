"""
Webhook signing utilities.

Outbound payloads are signed as HMAC-SHA256(secret, "{timestamp}.{body}")
and sent as the header value "t={timestamp},v1={hexdigest}".
"""
import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any


SECRET_PREFIX = "whsec_"
DEFAULT_TOLERANCE_SECONDS = 300


def generate_webhook_secret() -> str:
    """Generate a new endpoint secret (whsec_ + 24 random bytes, base64url)."""
    raw = base64.urlsafe_b64encode(secrets.token_bytes(24)).decode().rstrip("=")
    return f"{SECRET_PREFIX}{raw}"


def serialize_payload(payload: dict[str, Any]) -> str:
    """Canonical JSON body: compact separators, UTF-8 preserved."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def compute_signature(secret: str, timestamp: int, payload: str) -> str:
    """Hex HMAC-SHA256 of "{timestamp}.{payload}"."""
    message = f"{timestamp}.{payload}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def sign_webhook_payload(payload: str, secret: str, timestamp: int) -> str:
    """Build the X-Webhook-Signature header value."""
    return f"t={timestamp},v1={compute_signature(secret, timestamp, payload)}"


def parse_signature_header(header: str) -> tuple[int, str] | None:
    """Split "t=...,v1=..." into (timestamp, signature); None if malformed."""
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value

    try:
        timestamp = int(parts["t"])
        signature = parts["v1"]
    except (KeyError, ValueError):
        return None

    if not signature:
        return None
    return timestamp, signature


def verify_webhook_signature(
    payload: str,
    header: str,
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: int | None = None,
) -> bool:
    """
    Verify a signature header produced by sign_webhook_payload.

    Returns False for malformed headers, stale timestamps or mismatches.
    """
    parsed = parse_signature_header(header)
    if parsed is None:
        return False
    timestamp, provided = parsed

    current = int(time.time()) if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        return False

    expected = compute_signature(secret, timestamp, payload)
    return hmac.compare_digest(expected, provided)
