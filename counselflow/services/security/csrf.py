from __future__ import annotations

import hashlib
import hmac
import secrets
import time

from counselflow.core.config import get_settings


def _sign(secret: str, nonce: str, issued_at: int, subject_id: str) -> str:
    # Bind the signature to the admin subject so a token cannot be replayed by another admin.
    message = f"{nonce}:{issued_at}:{subject_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def issue_csrf_token(subject_id: str, *, now: float | None = None) -> str:
    """Return a ``nonce:issued_at:signature`` token for one admin subject."""
    settings = get_settings()
    issued_at = int(now if now is not None else time.time())
    nonce = secrets.token_hex(16)
    signature = _sign(settings.csrf_secret, nonce, issued_at, subject_id)
    return f"{nonce}:{issued_at}:{signature}"


def verify_csrf_token(token: str | None, subject_id: str, *, now: float | None = None) -> bool:
    settings = get_settings()
    if not token:
        return False
    parts = token.split(":")
    if len(parts) != 3:
        return False
    nonce, issued_raw, signature = parts
    try:
        issued_at = int(issued_raw)
    except ValueError:
        return False
    current = now if now is not None else time.time()
    age = current - issued_at
    if age < 0 or age > settings.csrf_token_ttl_s:
        return False
    expected = _sign(settings.csrf_secret, nonce, issued_at, subject_id)
    # Compare in constant time to avoid leaking signature prefixes.
    return hmac.compare_digest(expected, signature)
