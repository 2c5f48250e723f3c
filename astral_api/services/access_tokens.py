from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from astral_api.db.models import OAuthToken
from astral_api.services import credentials

logger = logging.getLogger(__name__)

def _now() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

async def validate_token(db: Session, client: httpx.AsyncClient, token: str | None) -> Optional[str]:
    """
    Resolve a bearer credential to a user id.
    OAuth token records win; anything else is checked with the Credential Store.
    Returns None when the credential is not acceptable.
    """
    if not token:
        return None

    row = db.execute(
        select(OAuthToken.user_id, OAuthToken.expires_at).where(OAuthToken.access_token == token)
    ).first()
    if row is not None:
        if as_utc(row.expires_at) > _now():
            return row.user_id
        logger.info("oauth access token expired", extra={"user_id": row.user_id})
        return None

    user = await credentials.get_user(client, token)
    if not user:
        return None
    return user["id"]
