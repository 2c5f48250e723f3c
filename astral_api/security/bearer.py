from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from astral_api.core.http import get_http_client
from astral_api.db.session import get_db
from astral_api.services import credentials
from astral_api.services.access_tokens import validate_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionUser:
    id: str
    email: str | None
    access_token: str
    auth_user: Dict[str, Any] = field(default_factory=dict, repr=False)


def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="No token provided")
    token = authorization[7:].strip()
    if not token:
        raise HTTPException(status_code=401, detail="No token provided")
    return token


async def require_user_id(
    token: str = Depends(bearer_token),
    db: Session = Depends(get_db),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> str:
    """Accepts OAuth-issued access tokens as well as raw Credential Store sessions."""
    try:
        user_id = await validate_token(db, client, token)
    except credentials.CredentialStoreError as e:
        logger.error("credential store unavailable: %s", e)
        raise HTTPException(status_code=503, detail="Authentication service unavailable")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


async def require_session(
    token: str = Depends(bearer_token),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> SessionUser:
    """
    Interactive session: the bearer must be a credential the Credential Store
    itself accepts, since it gets captured into authorization codes.
    """
    try:
        user = await credentials.get_user(client, token)
    except credentials.CredentialStoreError as e:
        logger.error("credential store unavailable: %s", e)
        raise HTTPException(status_code=503, detail="Authentication service unavailable")
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return SessionUser(id=user["id"], email=user.get("email"), access_token=token, auth_user=user)
