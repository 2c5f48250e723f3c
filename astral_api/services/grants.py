from __future__ import annotations
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import httpx
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from astral_api.core.config import settings
from astral_api.db.models import OAuthCode, OAuthToken
from astral_api.services import credentials
from astral_api.services.access_tokens import as_utc
from astral_api.services.crypto import decrypt_str
from astral_api.services.errors import (
    InvalidGrant,
    InvalidRequest,
    ServerError,
    UnsupportedGrantType,
)
from astral_api.services.tokens import generate_refresh_token
from astral_api.services.users import public_profile

logger = logging.getLogger(__name__)

TOKEN_TYPE = "Bearer"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _token_response(*, access_token: str, refresh_token: str, scope: str) -> Dict[str, Any]:
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_type": TOKEN_TYPE,
        "expires_in": settings.ACCESS_TOKEN_TTL_SECONDS,
        "refresh_expires_in": settings.REFRESH_TOKEN_TTL_SECONDS,
        "scope": scope,
    }


def _expiries(now: datetime) -> tuple[datetime, datetime]:
    return (
        now + timedelta(seconds=settings.ACCESS_TOKEN_TTL_SECONDS),
        now + timedelta(seconds=settings.REFRESH_TOKEN_TTL_SECONDS),
    )


# ---- store operations ------------------------------------------------------
# Each one is a single-row statement committed on its own.

def find_unused_code(db: Session, *, code: str, client_id: str) -> OAuthCode | None:
    return db.execute(
        select(OAuthCode).where(
            OAuthCode.code == code,
            OAuthCode.client_id == client_id,
            OAuthCode.used.is_(False),
        )
    ).scalar_one_or_none()


def delete_code(db: Session, *, code_id: int) -> None:
    db.execute(delete(OAuthCode).where(OAuthCode.id == code_id))
    db.commit()


def consume_code(db: Session, *, code_id: int) -> bool:
    """Flip ``used`` false -> true. False when another request got there first."""
    result = db.execute(
        update(OAuthCode)
        .where(OAuthCode.id == code_id, OAuthCode.used.is_(False))
        .values(used=True)
    )
    db.commit()
    return result.rowcount == 1


def persist_tokens(
    db: Session,
    *,
    access_token: str,
    refresh_token: str,
    client_id: str,
    user_id: str,
    scope: str,
    expires_at: datetime,
    refresh_expires_at: datetime,
) -> None:
    """
    Insert the token record, or, when one already exists for this access
    credential, rotate its refresh token and extend it in place.
    """
    try:
        db.add(OAuthToken(
            access_token=access_token,
            refresh_token=refresh_token,
            client_id=client_id,
            user_id=user_id,
            scope=scope,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
        ))
        db.commit()
        return
    except IntegrityError:
        db.rollback()

    result = db.execute(
        update(OAuthToken)
        .where(OAuthToken.access_token == access_token)
        .values(
            refresh_token=refresh_token,
            client_id=client_id,
            user_id=user_id,
            scope=scope,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
            updated_at=_now(),
        )
    )
    db.commit()
    if result.rowcount != 1:
        # the conflict was not on access_token (refresh token collision)
        raise ServerError("Failed to issue tokens")


def find_token(db: Session, *, refresh_token: str, client_id: str) -> OAuthToken | None:
    return db.execute(
        select(OAuthToken).where(
            OAuthToken.refresh_token == refresh_token,
            OAuthToken.client_id == client_id,
        )
    ).scalar_one_or_none()


def delete_token(db: Session, *, token_id: int) -> None:
    db.execute(delete(OAuthToken).where(OAuthToken.id == token_id))
    db.commit()


def rotate_refresh_token(
    db: Session,
    *,
    token_id: int,
    old_refresh_token: str,
    new_refresh_token: str,
    expires_at: datetime,
    refresh_expires_at: datetime,
) -> bool:
    """Compare-and-set on the presented refresh token."""
    result = db.execute(
        update(OAuthToken)
        .where(OAuthToken.id == token_id, OAuthToken.refresh_token == old_refresh_token)
        .values(
            refresh_token=new_refresh_token,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
            updated_at=_now(),
        )
    )
    db.commit()
    return result.rowcount == 1


# ---- grants --------------------------------------------------------------------

def exchange_authorization_code(
    db: Session,
    *,
    grant_type: str | None,
    code: str | None,
    client_id: str | None,
    redirect_uri: str | None = None,
    state: str | None = None,
) -> Dict[str, Any]:
    """
    authorization_code grant.

    Tokens are persisted before the code is marked used, so a failure in
    between leaves the code redeemable and the client can simply retry.
    """
    if grant_type != "authorization_code":
        raise UnsupportedGrantType("Only authorization_code grant type is supported")
    if not code or not client_id:
        raise InvalidRequest("Missing required parameters: code and client_id")

    try:
        auth_code = find_unused_code(db, code=code, client_id=client_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("authorization code lookup failed")
        raise ServerError("Internal server error") from e

    if auth_code is None:
        raise InvalidGrant("Invalid, expired, or already used authorization code")

    now = _now()
    if as_utc(auth_code.expires_at) <= now:
        try:
            delete_code(db, code_id=auth_code.id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("failed to delete expired authorization code")
            raise ServerError("Internal server error") from e
        logger.info("expired authorization code removed", extra={"code_id": auth_code.id})
        raise InvalidGrant("Authorization code has expired")

    if redirect_uri and redirect_uri != auth_code.redirect_uri:
        raise InvalidGrant("Invalid redirect URI")
    if state and state != auth_code.state:
        raise InvalidRequest("State parameter does not match")

    access_token = decrypt_str(auth_code.supabase_jwt_token)
    if not access_token:
        raise InvalidGrant("Authorization code carries no access credential; re-authorize the application")

    user = public_profile(auth_code.user)
    refresh_token = generate_refresh_token()
    expires_at, refresh_expires_at = _expiries(now)

    try:
        persist_tokens(
            db,
            access_token=access_token,
            refresh_token=refresh_token,
            client_id=client_id,
            user_id=auth_code.user_id,
            scope=auth_code.scope,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
        )
    except ServerError:
        logger.error("token persistence conflict", extra={"code_id": auth_code.id})
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("failed to persist tokens", extra={"code_id": auth_code.id})
        raise ServerError("Failed to issue tokens") from e

    try:
        consumed = consume_code(db, code_id=auth_code.id)
    except SQLAlchemyError as e:
        # tokens stay stored and the code stays unused; a retry lands on the update path
        db.rollback()
        logger.exception("failed to mark authorization code used", extra={"code_id": auth_code.id})
        raise ServerError("Failed to issue tokens") from e
    if not consumed:
        logger.info("authorization code already consumed by a concurrent request",
                    extra={"code_id": auth_code.id})

    logger.info("authorization code redeemed",
                extra={"client_id": client_id, "user_id": auth_code.user_id, "code_id": auth_code.id})

    body = _token_response(access_token=access_token, refresh_token=refresh_token, scope=auth_code.scope)
    body["user"] = user
    return body


async def refresh_access_token(
    db: Session,
    client: httpx.AsyncClient,
    *,
    grant_type: str | None,
    refresh_token: str | None,
    client_id: str | None,
) -> Dict[str, Any]:
    """
    refresh_token grant: rotate the refresh token while the stored access
    credential is still accepted by the Credential Store. This service never
    mints access credentials itself.
    """
    if grant_type != "refresh_token":
        raise UnsupportedGrantType("Only refresh_token grant type is supported")
    if not refresh_token or not client_id:
        raise InvalidRequest("Missing required parameters: refresh_token and client_id")

    try:
        record = find_token(db, refresh_token=refresh_token, client_id=client_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("refresh token lookup failed")
        raise ServerError("Internal server error") from e

    if record is None:
        raise InvalidGrant("Invalid refresh token")

    now = _now()
    if as_utc(record.refresh_expires_at) <= now:
        _evict(db, record)
        raise InvalidGrant("Refresh token has expired")

    usable = credentials.is_well_formed(record.access_token, now)
    if usable:
        try:
            usable = await credentials.get_user(client, record.access_token) is not None
        except credentials.CredentialStoreError as e:
            logger.error("credential store unavailable during refresh: %s", e)
            raise ServerError("Failed to refresh token") from e
    if not usable:
        _evict(db, record)
        raise InvalidGrant("Access credential is no longer valid; run the authorization flow again")

    new_refresh_token = generate_refresh_token()
    expires_at, refresh_expires_at = _expiries(now)
    try:
        rotated = rotate_refresh_token(
            db,
            token_id=record.id,
            old_refresh_token=refresh_token,
            new_refresh_token=new_refresh_token,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("failed to rotate refresh token", extra={"token_id": record.id})
        raise ServerError("Failed to refresh token") from e

    if not rotated:
        # lost the race to a concurrent refresh with the same token
        raise InvalidGrant("Invalid refresh token")

    logger.info("refresh token rotated",
                extra={"client_id": client_id, "user_id": record.user_id, "token_id": record.id})
    return _token_response(
        access_token=record.access_token, refresh_token=new_refresh_token, scope=record.scope
    )


def _evict(db: Session, record: OAuthToken) -> None:
    try:
        delete_token(db, token_id=record.id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("failed to delete token record", extra={"token_id": record.id})
        raise ServerError("Internal server error") from e
    logger.info("token record evicted", extra={"token_id": record.id, "user_id": record.user_id})
