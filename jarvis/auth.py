"""Credential helpers for the Jarvis hub.

bcrypt hashing for the operator PIN, TOTP checking via ``pyotp`` and JWT
verification for session tokens.  Connections are only required to present
a token when ``JARVIS_JWT_SECRET`` is set.
"""

from __future__ import annotations

import logging
import os
import time

import bcrypt
import jwt
import pyotp

logger = logging.getLogger(__name__)

# ── Configuration ─────────────────────────────────────────────────
JWT_SECRET = os.environ.get("JARVIS_JWT_SECRET", "")
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_SECONDS = int(os.environ.get("JARVIS_JWT_EXPIRY", "86400"))  # 24h
TOTP_VALID_WINDOW = 2


class TokenError(Exception):
    """Session token missing, expired or invalid."""


# ── PIN helpers ───────────────────────────────────────────────────

def verify_pin(pin: str, hashed: str | None) -> bool:
    """Check *pin* against a bcrypt hash.  No hash configured means no PIN verifies."""
    if not pin or not hashed:
        return False
    try:
        return bcrypt.checkpw(pin.encode(), hashed.encode())
    except ValueError:
        logger.error("Configured PIN hash is not a valid bcrypt hash")
        return False


# ── TOTP helpers ──────────────────────────────────────────────────

def verify_totp(code: str, secret: str | None, valid_window: int = TOTP_VALID_WINDOW) -> bool:
    """Check a one-time code, tolerating ``valid_window`` steps of clock drift."""
    if not code or not secret:
        return False
    try:
        return pyotp.TOTP(secret).verify(code.strip(), valid_window=valid_window)
    except Exception as exc:  # noqa: BLE001
        logger.error("TOTP verification failed: %s", exc)
        return False


# ── JWT helpers ───────────────────────────────────────────────────

def create_token(subject: str, secret: str | None = None) -> str:
    payload = {
        "sub": subject,
        "iat": int(time.time()),
        "exp": int(time.time()) + JWT_EXPIRY_SECONDS,
    }
    return jwt.encode(payload, secret or JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str | None = None) -> dict:
    try:
        return jwt.decode(token, secret or JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenError("Token expired")
    except jwt.InvalidTokenError:
        raise TokenError("Invalid token")
