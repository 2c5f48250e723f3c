from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from astral_api.core.clients import OAuthApp, get_client
from astral_api.core.config import settings
from astral_api.db.models import OAuthCode
from astral_api.services.crypto import encrypt_str
from astral_api.services.errors import InvalidRedirectUri, InvalidRequest, ServerError, UnknownClient
from astral_api.services.tokens import generate_auth_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationRequest:
    app: OAuthApp
    redirect_uri: str
    scope: str
    state: str | None

    @property
    def scopes(self) -> List[str]:
        return self.scope.split()


def resolve_request(
    *, client_id: str | None, redirect_uri: str | None, scope: str | None, state: str | None
) -> AuthorizationRequest:
    """Check the client against the registry before the user is asked anything."""
    if not client_id:
        raise InvalidRequest("Missing client_id parameter")
    app = get_client(client_id)
    if app is None:
        raise UnknownClient("Unknown application")
    if redirect_uri and redirect_uri != app.redirect_uri:
        raise InvalidRedirectUri("Invalid redirect_uri")
    return AuthorizationRequest(
        app=app,
        redirect_uri=app.redirect_uri,
        scope=scope or app.default_scope,
        state=state or None,
    )


def build_redirect(redirect_uri: str, params: dict) -> str:
    """Append query params to the registered redirect URI (works for custom schemes)."""
    parts = urlsplit(redirect_uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def issue_code(
    db: Session, req: AuthorizationRequest, *, user_id: str, access_credential: str
) -> str:
    """
    Persist a fresh single-use code for an approving user and return the
    redirect URL carrying it.
    """
    code = generate_auth_code()
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.OAUTH_CODE_TTL_SECONDS)

    row = OAuthCode(
        code=code,
        client_id=req.app.client_id,
        user_id=user_id,
        redirect_uri=req.redirect_uri,
        scope=req.scope,
        state=req.state,
        expires_at=expires_at,
        used=False,
        supabase_jwt_token=encrypt_str(access_credential),
    )
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("failed to store authorization code", extra={"client_id": req.app.client_id})
        raise ServerError("Failed to authorize application") from e

    logger.info(
        "authorization code issued",
        extra={"client_id": req.app.client_id, "user_id": user_id, "code_id": row.id},
    )
    return build_redirect(req.redirect_uri, {"code": code, "state": req.state})


def deny(req: AuthorizationRequest) -> str:
    return build_redirect(req.redirect_uri, {"error": "access_denied", "state": req.state})
