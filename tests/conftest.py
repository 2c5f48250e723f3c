from __future__ import annotations

import json
import os
import tempfile
import time
from base64 import urlsafe_b64encode
from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import httpx
import pytest

# Settings are read at import time, so the environment has to be in place first.
_TMP = Path(tempfile.mkdtemp(prefix="astral-api-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.sqlite3'}"
os.environ["LOG_DIR"] = str(_TMP / "logs")
os.environ["ENCRYPTION_KEY"] = "A" * 43 + "="  # 32 zero bytes, urlsafe base64
os.environ["SUPABASE_URL"] = "https://supabase.test"
os.environ["SUPABASE_ANON_KEY"] = "anon-key"
os.environ["ENV"] = "test"

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from astral_api.core.http import get_http_client  # noqa: E402
from astral_api.db.models import Base  # noqa: E402
from astral_api.db.session import SessionLocal, engine  # noqa: E402
from astral_api.main import app  # noqa: E402
from astral_api.security import ratelimit  # noqa: E402


def _b64e(b: bytes) -> str:
    return urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def make_jwt(sub: str, *, exp_in: int = 3600) -> str:
    header = _b64e(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    payload = _b64e(json.dumps({"sub": sub, "exp": int(time.time()) + exp_in}).encode())
    return f"{header}.{payload}.{_b64e(b'signature')}"


class FakeAuthServer:
    """Just enough of Supabase Auth for the flows under test."""

    VALID_OTP = "123456"
    EXPIRED_OTP = "999999"

    def __init__(self) -> None:
        self.sessions: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_status: int | None = None
        self.otp_status: int = 200

    def add_session(self, user_id: str, email: str, *, token: str | None = None, name: str | None = None) -> str:
        token = token or make_jwt(user_id)
        meta = {"name": name} if name else {}
        self.sessions[token] = {"id": user_id, "email": email, "user_metadata": meta}
        return token

    def revoke(self, token: str) -> None:
        self.sessions.pop(token, None)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"msg": "upstream failure"})

        if path == "/auth/v1/user":
            token = request.headers.get("Authorization", "")[len("Bearer "):]
            user = self.sessions.get(token)
            if user is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            return httpx.Response(200, json=user)

        if path == "/auth/v1/otp":
            if self.otp_status != 200:
                return httpx.Response(self.otp_status, json={"msg": "email rate limit exceeded"})
            return httpx.Response(200, json={})

        if path == "/auth/v1/verify":
            body = json.loads(request.content)
            if body.get("token") == self.EXPIRED_OTP:
                return httpx.Response(403, json={"msg": "Token has expired"})
            if body.get("token") != self.VALID_OTP:
                return httpx.Response(403, json={"msg": "Invalid OTP"})
            email = body["email"]
            user_id = "u-" + email.split("@")[0]
            access = self.add_session(user_id, email)
            return httpx.Response(200, json={
                "access_token": access,
                "refresh_token": "sb-refresh",
                "expires_in": 3600,
                "token_type": "bearer",
                "user": self.sessions[access],
            })

        return httpx.Response(404, json={"msg": "not found"})


@pytest.fixture(autouse=True)
def _schema() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    ratelimit.reset()
    yield


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def auth_server() -> FakeAuthServer:
    return FakeAuthServer()


@pytest.fixture()
def client(auth_server: FakeAuthServer) -> Generator[TestClient, None, None]:
    transport = httpx.MockTransport(auth_server.handler)

    async def override_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
        async with httpx.AsyncClient(transport=transport) as c:
            yield c

    app.dependency_overrides[get_http_client] = override_http_client
    try:
        yield TestClient(app, follow_redirects=False)
    finally:
        app.dependency_overrides.clear()
