from __future__ import annotations
import json
import logging
from base64 import urlsafe_b64decode
from binascii import Error as BinasciiError
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from astral_api.core.config import settings

logger = logging.getLogger(__name__)


class CredentialStoreError(RuntimeError):
    """Supabase Auth unreachable or answered with something unexpected."""


class RateLimited(CredentialStoreError):
    pass


class OtpExpired(ValueError):
    pass


class OtpInvalid(ValueError):
    pass


def _b64d(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return urlsafe_b64decode((s + pad).encode("ascii"))


def _auth_url(path: str) -> str:
    return f"{settings.SUPABASE_URL.rstrip('/')}/auth/v1/{path.lstrip('/')}"


def _headers(bearer: str | None = None) -> Dict[str, str]:
    key = settings.supabase_api_key
    headers = {"apikey": key, "Content-Type": "application/json"}
    headers["Authorization"] = f"Bearer {bearer or key}"
    return headers


def _error_message(resp: httpx.Response) -> str:
    try:
        j = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(j, dict):
        for k in ("msg", "message", "error_description", "error"):
            if j.get(k):
                return str(j[k])
    return resp.text[:200]


def is_well_formed(token: str | None, now: datetime | None = None) -> bool:
    """
    Structural check of a JWT access credential: three segments, JSON payload,
    and an ``exp`` claim (when present) that has not passed. The signature is
    not checked here; only the Credential Store can vouch for it.
    """
    if not token or not isinstance(token, str):
        return False
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return False
    try:
        payload = json.loads(_b64d(parts[1]).decode("utf-8"))
    except (BinasciiError, UnicodeDecodeError, ValueError):
        return False
    if not isinstance(payload, dict):
        return False

    exp = payload.get("exp")
    if exp is None:
        return True
    try:
        exp_ts = int(exp)
    except (TypeError, ValueError):
        return False
    now = now or datetime.now(timezone.utc)
    return exp_ts > int(now.timestamp())


async def get_user(client: httpx.AsyncClient, token: str) -> Optional[Dict[str, Any]]:
    """
    Ask Supabase Auth who owns ``token``.
    Returns the user dict, or None when the credential is rejected.
    """
    try:
        resp = await client.get(_auth_url("user"), headers=_headers(token))
    except httpx.HTTPError as e:
        raise CredentialStoreError(f"credential store unreachable: {e!r}") from e

    if resp.status_code in (400, 401, 403, 404):
        return None
    if resp.status_code != 200:
        raise CredentialStoreError(f"get_user failed: {resp.status_code} {resp.text[:200]}")

    user = resp.json()
    if not isinstance(user, dict) or not user.get("id"):
        return None
    return user


async def send_otp(client: httpx.AsyncClient, email: str) -> None:
    """Email a one-time code, creating the auth user on first sign-in."""
    try:
        resp = await client.post(
            _auth_url("otp"),
            headers=_headers(),
            json={"email": email, "create_user": True},
        )
    except httpx.HTTPError as e:
        raise CredentialStoreError(f"credential store unreachable: {e!r}") from e

    if resp.status_code == 429:
        raise RateLimited(_error_message(resp))
    if resp.status_code >= 400:
        raise CredentialStoreError(f"send_otp failed: {resp.status_code} {_error_message(resp)}")


async def verify_otp(client: httpx.AsyncClient, email: str, token: str) -> Dict[str, Any]:
    """
    Exchange an emailed code for a session.
    Returns: {access_token, refresh_token, expires_in, token_type, user}
    """
    try:
        resp = await client.post(
            _auth_url("verify"),
            headers=_headers(),
            json={"type": "email", "email": email, "token": token},
        )
    except httpx.HTTPError as e:
        raise CredentialStoreError(f"credential store unreachable: {e!r}") from e

    if resp.status_code == 429:
        raise RateLimited(_error_message(resp))
    if resp.status_code >= 500:
        raise CredentialStoreError(f"verify_otp failed: {resp.status_code} {resp.text[:200]}")
    if resp.status_code >= 400:
        msg = _error_message(resp)
        if "expired" in msg.lower():
            raise OtpExpired(msg)
        raise OtpInvalid(msg)

    j = resp.json()
    if not isinstance(j, dict) or not j.get("access_token") or not j.get("user"):
        raise CredentialStoreError("verify_otp returned no session")
    return j
