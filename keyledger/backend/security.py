"""Security helpers for the administrator token."""

from __future__ import annotations

import hashlib
import hmac
import secrets


TOKEN_BYTES = 24


def generate_token() -> str:
    """Generate a URL-safe administrator token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str, server_salt: str) -> str:
    """Create deterministic token hash via sha256(token + server_salt)."""
    payload = f"{token}{server_salt}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def issue_admin_token(server_salt: str) -> tuple[str, str]:
    """Return a fresh administrator token and the hash to configure for it."""
    token = generate_token()
    return token, hash_token(token, server_salt)


def verify_token(raw_token: str, expected_hash: str | None, server_salt: str) -> bool:
    """Compare raw token against a stored hash; no hash means nobody is admitted."""
    if not expected_hash or not raw_token:
        return False
    return hmac.compare_digest(hash_token(raw_token, server_salt), expected_hash)
