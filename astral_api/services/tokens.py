from __future__ import annotations
import secrets
from base64 import urlsafe_b64encode

REFRESH_TOKEN_PREFIX = "rt_"
AUTH_CODE_PREFIX = "ac_"

REFRESH_TOKEN_BYTES = 48
AUTH_CODE_BYTES = 32
STATE_BYTES = 32


def _b64e(b: bytes) -> str:
    return urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def generate_refresh_token() -> str:
    """Opaque rotating refresh token: ``rt_`` + 384 random bits, base64url."""
    return REFRESH_TOKEN_PREFIX + _b64e(secrets.token_bytes(REFRESH_TOKEN_BYTES))


def generate_auth_code() -> str:
    """Single-use authorization code: ``ac_`` + 256 random bits, base64url."""
    return AUTH_CODE_PREFIX + _b64e(secrets.token_bytes(AUTH_CODE_BYTES))


def generate_state() -> str:
    return _b64e(secrets.token_bytes(STATE_BYTES))
