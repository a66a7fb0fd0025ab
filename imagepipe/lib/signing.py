"""HMAC-SHA256 signatures for time-limited local object URLs.

The signature covers the bucket, object path, expiry timestamp and the
optional forced-download filename, so none of them can be altered without
invalidating the link.
"""

import base64
import hashlib
import hmac
import time


def _message(bucket: str, path: str, expires: int, download: str | None) -> bytes:
    return f"{bucket}/{path}\n{expires}\n{download or ''}".encode()


def sign_object(bucket: str, path: str, expires: int, secret: str, download: str | None = None) -> str:
    """Return the URL-safe signature for an object link expiring at *expires* (unix seconds)."""
    digest = hmac.new(secret.encode(), _message(bucket, path, expires, download), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def verify_object_signature(
    bucket: str,
    path: str,
    expires: str | int | None,
    signature: str | None,
    secret: str,
    download: str | None = None,
    now: float | None = None,
) -> bool:
    """Check a signature produced by :func:`sign_object` and that it has not expired."""
    if not signature or expires is None:
        return False
    try:
        expires_at = int(expires)
    except (TypeError, ValueError):
        return False

    if (now if now is not None else time.time()) > expires_at:
        return False

    expected = sign_object(bucket, path, expires_at, secret, download)
    return hmac.compare_digest(expected, signature)
