from __future__ import annotations
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from astral_api.core.clients import get_client
from astral_api.core.http import get_http_client
from astral_api.db.models import User
from astral_api.db.session import get_db
from astral_api.security.bearer import require_user_id
from astral_api.security.ratelimit import limit_by_ip, limit_otp_for_email
from astral_api.services import credentials
from astral_api.services.users import ensure_profile, full_profile, public_profile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class OtpReq(BaseModel):
    email: str = ""
    client_id: Optional[str] = None

class OtpResp(BaseModel):
    success: bool
    message: str

class VerifyOtpReq(BaseModel):
    email: str = ""
    token: str = ""
    client_id: Optional[str] = None

class SessionResp(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int
    token_type: str = "bearer"
    user: dict


def _check_email(email: str) -> str:
    email = email.strip()
    if not email or "@" not in email:
        raise HTTPException(status_code=400, detail="Invalid email address")
    return email

def _note_client(client_id: str | None, action: str) -> None:
    if get_client(client_id) is None:
        logger.warning("unknown client %s", action, extra={"client_id": client_id})


@router.post(
    "/otp",
    response_model=OtpResp,
    summary="Email a one-time sign-in code",
    dependencies=[Depends(limit_by_ip)],
)
async def send_otp(payload: OtpReq, client: httpx.AsyncClient = Depends(get_http_client)):
    email = _check_email(payload.email)
    _note_client(payload.client_id, "requesting OTP")
    limit_otp_for_email(email)

    try:
        await credentials.send_otp(client, email)
    except credentials.RateLimited:
        raise HTTPException(status_code=429, detail="Too many requests. Please wait before trying again.")
    except credentials.CredentialStoreError as e:
        logger.error("send_otp failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to send verification code")

    logger.info("verification code sent")
    return OtpResp(success=True, message="Verification code sent to your email")


@router.post(
    "/verify-otp",
    response_model=SessionResp,
    summary="Verify a one-time code and open a session",
    dependencies=[Depends(limit_by_ip)],
)
async def verify_otp(
    payload: VerifyOtpReq,
    db: Session = Depends(get_db),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    email = _check_email(payload.email)
    token = payload.token.strip()
    if len(token) != 6:
        raise HTTPException(status_code=400, detail="Invalid verification code")
    _note_client(payload.client_id, "verifying OTP")

    try:
        session = await credentials.verify_otp(client, email, token)
    except credentials.OtpExpired:
        raise HTTPException(status_code=400, detail="Verification code has expired")
    except credentials.OtpInvalid:
        raise HTTPException(status_code=400, detail="Invalid verification code")
    except credentials.RateLimited:
        raise HTTPException(status_code=429, detail="Too many requests. Please wait before trying again.")
    except credentials.CredentialStoreError as e:
        logger.error("verify_otp failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create session")

    auth_user = session["user"]
    profile = ensure_profile(db, auth_user=auth_user, email=email)

    return SessionResp(
        access_token=session["access_token"],
        refresh_token=session.get("refresh_token"),
        expires_in=int(session.get("expires_in") or 3600),
        user=public_profile(profile),
    )


@router.get("/profile", summary="Profile of the bearer's user")
def profile(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    row = db.get(User, user_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {"user": full_profile(row)}
