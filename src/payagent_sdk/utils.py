"""Utility functions for the PayAgent SDK."""

import hashlib
import hmac
from typing import Optional, Union

Body = Union[bytes, str, None]


def _body_bytes(body: Body) -> bytes:
    if body is None:
        return b""
    if isinstance(body, str):
        return body.encode("utf-8")
    return body


def sign_request(secret: str, timestamp: str, method: str, path: str, body: Body = None) -> str:
    """Create the ``x-signature`` value for an API request.

    Args:
        secret: The ``sk_live_…`` API secret.
        timestamp: Unix seconds, exactly as sent in ``x-timestamp``.
        method: HTTP method.
        path: Request path without query string.
        body: Raw request body, exactly as sent.

    Returns:
        The hex-encoded HMAC-SHA256 signature.
    """
    if not secret:
        raise ValueError("API secret is required for signing")

    body_hash = hashlib.sha256(_body_bytes(body)).hexdigest()
    string_to_sign = f"{timestamp}\n{method.upper()}\n{path}\n{body_hash}"
    return hmac.new(secret.encode(), string_to_sign.encode(), hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: Body, signature_header: Optional[str], secret: str) -> bool:
    """Check a webhook delivery's ``X-Signature`` header.

    Args:
        payload: Raw request body as received (do not re-serialize it).
        signature_header: Header value, ``sha256=<hex>``.
        secret: The subscription's ``whsec_…`` secret.
    """
    if not secret:
        raise ValueError("Webhook secret is required for verification")
    if not signature_header or not signature_header.startswith("sha256="):
        return False

    expected = hmac.new(secret.encode(), _body_bytes(payload), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len("sha256="):])
