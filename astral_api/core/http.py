from __future__ import annotations

from collections.abc import AsyncGenerator

import httpx

from astral_api.core.config import settings


async def get_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    # One place for upstream timeouts; tests override this dependency with a MockTransport client.
    async with httpx.AsyncClient(timeout=settings.SUPABASE_TIMEOUT_SECONDS) as client:
        yield client
