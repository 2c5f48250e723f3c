from __future__ import annotations
import time
from typing import Dict, Tuple
from fastapi import HTTPException, Request
from astral_api.core.config import settings

# Simple fixed-window counters held in-process (per worker).
# Keys: ("ip", client_ip) or ("otp", email) -> (window_start_epoch, count)
_counters: Dict[Tuple[str, ...], Tuple[int, int]] = {}
_last_sweep = 0

def reset() -> None:
    global _last_sweep
    _counters.clear()
    _last_sweep = 0

def _sweep(now: int, window_seconds: int) -> None:
    # drop counters whose window has closed; runs at most once per window
    global _last_sweep
    if now - _last_sweep < window_seconds:
        return
    _last_sweep = now
    for key in [k for k, (start, _) in _counters.items() if start + window_seconds <= now]:
        del _counters[key]

def _bump(key: Tuple[str, ...], max_requests: int, window_seconds: int):
    if max_requests <= 0:
        return
    now = int(time.time())
    _sweep(now, window_seconds)
    window = now - (now % window_seconds)  # start-of-window
    start, count = _counters.get(key, (window, 0))
    if start != window:
        start, count = window, 0
    count += 1
    _counters[key] = (start, count)
    remaining = max_requests - count
    if remaining < 0:
        retry_after = start + window_seconds - now
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please wait before trying again.",
            headers={"Retry-After": str(max(0, retry_after))},
        )

def get_client_ip(request: Request) -> str:
    # X-Forwarded-For is only believed when the direct peer is a configured proxy;
    # proxies append, so the client is the right-most hop that is not one of ours
    peer = request.client.host if request.client else ""
    trusted = settings.TRUSTED_PROXY_IPS
    xf = request.headers.get("x-forwarded-for")
    if not xf or peer not in trusted:
        return peer
    hops = [h.strip() for h in xf.split(",") if h.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer

async def limit_by_ip(request: Request):
    _bump(
        ("ip", get_client_ip(request)),
        settings.RATE_LIMIT_MAX_PER_IP,
        settings.RATE_LIMIT_WINDOW_SECONDS,
    )

def limit_otp_for_email(email: str) -> None:
    _bump(
        ("otp", email.strip().lower()),
        settings.RATE_LIMIT_MAX_OTP_PER_EMAIL,
        settings.RATE_LIMIT_WINDOW_SECONDS,
    )
