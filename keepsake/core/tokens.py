"""Minimal HS256 JWT session tokens (stdlib only)."""
import base64
import hashlib
import hmac
import json
import time

from keepsake.config import settings


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s)


def _sign(secret: str, signing_input: str) -> str:
    return _b64url_encode(hmac.new(
        secret.encode(), signing_input.encode(), hashlib.sha256
    ).digest())


def create_token(username: str, secret: str, expires_days: int = None) -> str:
    """Issue a token for ``username``; defaults to the configured 90-day window."""
    if not secret:
        raise ValueError("Signing secret is empty")
    if expires_days is None:
        expires_days = settings.token_expire_days
    header = _b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    payload = _b64url_encode(json.dumps({
        "sub": username,
        "exp": int(time.time()) + expires_days * 86400,
    }).encode())
    return f"{header}.{payload}.{_sign(secret, f'{header}.{payload}')}"


def verify_token(token: str, secret: str) -> dict:
    """Check signature and expiry; returns the claims."""
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("Invalid token format")
    header, payload, sig = parts
    if not hmac.compare_digest(sig, _sign(secret, f"{header}.{payload}")):
        raise ValueError("Invalid signature")
    try:
        data = json.loads(_b64url_decode(payload))
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError("Invalid token payload") from e
    if data.get("exp", 0) < time.time():
        raise ValueError("Token expired")
    return data
