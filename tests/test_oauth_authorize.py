from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from astral_api.db.models import OAuthCode, User
from astral_api.services.crypto import decrypt_str
from conftest import FakeAuthServer


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_consent_prompt_describes_registered_app(client: TestClient, auth_server: FakeAuthServer) -> None:
    token = auth_server.add_session("user-1", "steve@example.com")
    res = client.get(
        "/oauth/authorize",
        params={"client_id": "astral-launcher", "redirect_uri": "astral-ai://callback", "state": "abc"},
        headers=_auth(token),
    )
    assert res.status_code == 200
    body = res.json()
    assert body["name"] == "ASTRAL-AI Launcher"
    assert body["scopes"] == ["profile", "launcher"]
    assert body["state"] == "abc"
    assert body["user"]["email"] == "steve@example.com"


def test_approval_issues_code_and_redirects(
    client: TestClient, auth_server: FakeAuthServer, db_session: Session
) -> None:
    token = auth_server.add_session("user-1", "steve@example.com")
    res = client.post(
        "/oauth/authorize",
        json={"client_id": "astral-launcher", "state": "xyz", "scope": "profile", "approve": True},
        headers=_auth(token),
    )
    assert res.status_code == 302
    loc = urlsplit(res.headers["location"])
    assert f"{loc.scheme}://{loc.netloc}" == "astral-ai://callback"
    qs = parse_qs(loc.query)
    assert qs["state"] == ["xyz"]
    code = qs["code"][0]
    assert code.startswith("ac_")

    row = db_session.execute(select(OAuthCode).where(OAuthCode.code == code)).scalar_one()
    assert row.used is False
    assert row.scope == "profile"
    assert row.redirect_uri == "astral-ai://callback"
    # stored encrypted, recoverable verbatim
    assert row.supabase_jwt_token != token
    assert decrypt_str(row.supabase_jwt_token) == token

    expires = row.expires_at.replace(tzinfo=None)
    created = row.created_at.replace(tzinfo=None)
    assert 590 <= (expires - created).total_seconds() <= 610

    assert db_session.get(User, "user-1") is not None


def test_denial_redirects_without_code(
    client: TestClient, auth_server: FakeAuthServer, db_session: Session
) -> None:
    token = auth_server.add_session("user-1", "steve@example.com")
    res = client.post(
        "/oauth/authorize",
        json={"client_id": "astral-launcher", "state": "xyz", "approve": False},
        headers=_auth(token),
    )
    assert res.status_code == 302
    qs = parse_qs(urlsplit(res.headers["location"]).query)
    assert qs == {"error": ["access_denied"], "state": ["xyz"]}
    assert db_session.execute(select(OAuthCode)).first() is None


def test_unknown_client(client: TestClient, auth_server: FakeAuthServer) -> None:
    token = auth_server.add_session("user-1", "steve@example.com")
    res = client.post("/oauth/authorize", json={"client_id": "nope", "approve": True}, headers=_auth(token))
    assert res.status_code == 400
    assert res.json()["error"] == "unknown_client"


def test_missing_client_id(client: TestClient, auth_server: FakeAuthServer) -> None:
    token = auth_server.add_session("user-1", "steve@example.com")
    res = client.get("/oauth/authorize", headers=_auth(token))
    assert res.status_code == 400
    assert res.json()["error"] == "invalid_request"


def test_redirect_uri_must_match_registration(client: TestClient, auth_server: FakeAuthServer) -> None:
    token = auth_server.add_session("user-1", "steve@example.com")
    res = client.post(
        "/oauth/authorize",
        json={"client_id": "astral-launcher", "redirect_uri": "https://evil.example/cb", "approve": True},
        headers=_auth(token),
    )
    assert res.status_code == 400
    assert res.json()["error"] == "invalid_redirect_uri"


def test_authorization_requires_a_session(client: TestClient) -> None:
    res = client.post("/oauth/authorize", json={"client_id": "astral-launcher", "approve": True})
    assert res.status_code == 401

    res = client.post(
        "/oauth/authorize",
        json={"client_id": "astral-launcher", "approve": True},
        headers=_auth("not-a-real-session"),
    )
    assert res.status_code == 401
