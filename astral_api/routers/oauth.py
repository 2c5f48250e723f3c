from __future__ import annotations
from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy.orm import Session

from astral_api.core.http import get_http_client
from astral_api.db.session import get_db
from astral_api.security.bearer import SessionUser, require_session
from astral_api.security.ratelimit import limit_by_ip
from astral_api.services import authorization, grants
from astral_api.services.errors import InvalidRequest
from astral_api.services.users import ensure_profile, public_profile

router = APIRouter(tags=["oauth"])


class TokenReq(BaseModel):
    model_config = ConfigDict(extra="ignore")

    grant_type: Optional[str] = None
    code: Optional[str] = None
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    state: Optional[str] = None


class RefreshReq(BaseModel):
    model_config = ConfigDict(extra="ignore")

    grant_type: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None


class TokenResp(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_in: int
    scope: str
    user: Optional[dict] = None


class RefreshResp(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_in: int
    scope: str


class ConsentResp(BaseModel):
    client_id: str
    name: str
    redirect_uri: str
    scopes: List[str]
    state: Optional[str] = None
    user: Optional[dict] = None


class AuthorizeReq(BaseModel):
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    state: Optional[str] = None
    scope: Optional[str] = None
    approve: bool = False


async def _json_body(request: Request, model: type[BaseModel]) -> BaseModel:
    ctype = request.headers.get("content-type", "")
    if "application/json" not in ctype.lower():
        raise InvalidRequest("Content-Type must be application/json")
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("Request body must be valid JSON")
    try:
        return model.model_validate(body)
    except ValidationError:
        raise InvalidRequest("Malformed request body")


@router.post(
    "/api/oauth/token",
    response_model=TokenResp,
    summary="Exchange an authorization code for tokens",
    dependencies=[Depends(limit_by_ip)],
)
async def token(request: Request, db: Session = Depends(get_db)):
    req = await _json_body(request, TokenReq)
    return grants.exchange_authorization_code(
        db,
        grant_type=req.grant_type,
        code=req.code,
        client_id=req.client_id,
        redirect_uri=req.redirect_uri,
        state=req.state,
    )


@router.post(
    "/api/oauth/refresh",
    response_model=RefreshResp,
    summary="Rotate a refresh token",
    dependencies=[Depends(limit_by_ip)],
)
async def refresh(
    request: Request,
    db: Session = Depends(get_db),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    req = await _json_body(request, RefreshReq)
    return await grants.refresh_access_token(
        db,
        client,
        grant_type=req.grant_type,
        refresh_token=req.refresh_token,
        client_id=req.client_id,
    )


@router.get("/oauth/authorize", response_model=ConsentResp, summary="Describe a pending authorization")
def authorize_prompt(
    client_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    session: SessionUser = Depends(require_session),
    db: Session = Depends(get_db),
):
    req = authorization.resolve_request(
        client_id=client_id, redirect_uri=redirect_uri, scope=scope, state=state
    )
    profile = ensure_profile(db, auth_user=session.auth_user, email=session.email or "")
    return ConsentResp(
        client_id=req.app.client_id,
        name=req.app.name,
        redirect_uri=req.redirect_uri,
        scopes=req.scopes,
        state=req.state,
        user=public_profile(profile),
    )


@router.post("/oauth/authorize", summary="Approve or deny an application")
def authorize_decision(
    payload: AuthorizeReq,
    session: SessionUser = Depends(require_session),
    db: Session = Depends(get_db),
):
    req = authorization.resolve_request(
        client_id=payload.client_id,
        redirect_uri=payload.redirect_uri,
        scope=payload.scope,
        state=payload.state,
    )
    if not payload.approve:
        return RedirectResponse(authorization.deny(req), status_code=302)

    # the code row references the profile
    ensure_profile(db, auth_user=session.auth_user, email=session.email or "")
    url = authorization.issue_code(
        db, req, user_id=session.id, access_credential=session.access_token
    )
    return RedirectResponse(url, status_code=302)
