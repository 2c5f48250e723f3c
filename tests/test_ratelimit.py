from __future__ import annotations

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from astral_api.core.config import settings
from astral_api.security import ratelimit


def _request(peer: str, forwarded: str | None = None) -> Request:
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "method": "POST", "path": "/", "headers": headers, "client": (peer, 50000)})


def test_closed_windows_are_swept(monkeypatch) -> None:
    clock = [1_000_040]
    monkeypatch.setattr(ratelimit.time, "time", lambda: clock[0])

    for n in range(50):
        ratelimit._bump(("ip", f"10.0.0.{n}"), 10, 60)
    assert len(ratelimit._counters) == 50

    clock[0] += 60
    ratelimit._bump(("ip", "10.0.1.1"), 10, 60)
    assert list(ratelimit._counters) == [("ip", "10.0.1.1")]


def test_counter_resets_in_next_window(monkeypatch) -> None:
    clock = [1_000_040]
    monkeypatch.setattr(ratelimit.time, "time", lambda: clock[0])

    ratelimit._bump(("otp", "a@example.com"), 1, 60)
    with pytest.raises(HTTPException) as exc:
        ratelimit._bump(("otp", "a@example.com"), 1, 60)
    assert exc.value.status_code == 429
    assert exc.value.headers["Retry-After"] == "40"

    clock[0] += 60
    ratelimit._bump(("otp", "a@example.com"), 1, 60)


def test_forwarded_for_ignored_without_trusted_proxy() -> None:
    assert ratelimit.get_client_ip(_request("203.0.113.9", "198.51.100.1")) == "203.0.113.9"


def test_forwarded_for_from_trusted_proxy(monkeypatch) -> None:
    monkeypatch.setattr(settings, "TRUSTED_PROXY_IPS", ["10.0.0.2", "10.0.0.3"])

    assert ratelimit.get_client_ip(_request("10.0.0.2", "198.51.100.1")) == "198.51.100.1"
    # a client-supplied hop in front of the real one is skipped
    assert ratelimit.get_client_ip(_request("10.0.0.2", "1.2.3.4, 198.51.100.1, 10.0.0.3")) == "198.51.100.1"
    assert ratelimit.get_client_ip(_request("10.0.0.2")) == "10.0.0.2"
