from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

# 192 bits; session ids and CSRF tokens must not go below this
MIN_TOKEN_BYTES = 24
DEFAULT_TOKEN_BYTES = 32


def random_token(byte_length: int = DEFAULT_TOKEN_BYTES) -> str:
    """Return a URL-safe, unpadded base64 token drawn from the OS CSPRNG.

    There is no fallback source: if ``secrets`` cannot read entropy the error
    propagates and the caller's request fails.
    """
    if byte_length < MIN_TOKEN_BYTES:
        raise ValueError(f"token length must be at least {MIN_TOKEN_BYTES} bytes")
    raw = secrets.token_bytes(byte_length)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def hash_value(value: str) -> str:
    """SHA-256 hex digest for tokens at rest. Not for passwords."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def fingerprint_client_ip(ip: str, secret: str) -> str:
    """Keyed digest of a client address so raw IPs are never persisted."""
    return hmac.new(
        secret.encode("utf-8"), (ip or "").encode("utf-8"), hashlib.sha256
    ).hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


__all__ = [
    "MIN_TOKEN_BYTES",
    "DEFAULT_TOKEN_BYTES",
    "random_token",
    "hash_value",
    "fingerprint_client_ip",
    "constant_time_equals",
]
