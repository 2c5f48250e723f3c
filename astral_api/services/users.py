from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from astral_api.db.models import User

logger = logging.getLogger(__name__)


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def public_profile(user: User | None) -> Optional[Dict[str, Any]]:
    """Snapshot handed to OAuth clients alongside their tokens."""
    if user is None:
        return None
    return {
        "id": user.id,
        "name": user.custom_username or user.name,
        "email": user.email,
        "avatar_url": user.avatar_url,
        "subscription_tier": user.subscription_tier or "free",
        "created_at": _iso(user.created_at),
    }


def full_profile(user: User) -> Dict[str, Any]:
    out = public_profile(user)
    out.update({
        "custom_username": user.custom_username,
        "has_custom_username": bool(user.has_custom_username),
        "last_seen": _iso(user.updated_at or user.created_at),
    })
    return out


def _default_name(auth_user: Dict[str, Any], email: str) -> str:
    meta = auth_user.get("user_metadata") or {}
    return meta.get("name") or meta.get("full_name") or email.split("@")[0]


def ensure_profile(db: Session, *, auth_user: Dict[str, Any], email: str) -> User:
    """
    Return the profile row for a Credential Store user, creating it on first login.
    """
    user_id = auth_user["id"]
    row = db.get(User, user_id)
    if row is not None:
        return row

    meta = auth_user.get("user_metadata") or {}
    row = User(
        id=user_id,
        email=auth_user.get("email") or email,
        name=_default_name(auth_user, email),
        avatar_url=meta.get("avatar_url"),
        subscription_tier="free",
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent login created it first
        db.rollback()
        existing = db.get(User, user_id)
        if existing is None:
            raise
        return existing

    logger.info("created user profile", extra={"user_id": user_id})
    return row
