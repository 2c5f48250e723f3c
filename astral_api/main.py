import logging
import time
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from .routers import health, oauth
from .routers import auth as auth_router
from .core.config import settings
from .core.logging import setup_logging, set_request_id
from .db.session import engine
from .db.models import Base
from .services.crypto import get_fernet
from .services.errors import OAuthError

get_fernet()
setup_logging(settings.LOG_DIR)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Astral Web API", version="1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    # any localhost port while developing
    allow_origin_regex=r"https?://localhost(:\d+)?" if settings.is_dev else None,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "User-Agent", "X-Request-ID"],
    max_age=86400,
)

class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        set_request_id(rid)
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = int((time.perf_counter() - start) * 1000)
        host = request.client.host if request.client else "-"
        logging.getLogger("astral_api.request").info(
            f"{host} {request.method} {request.url.path} {response.status_code} {dur_ms}ms",
            extra={"method": request.method, "path": str(request.url.path), "status": response.status_code, "dur_ms": dur_ms},
        )
        response.headers["X-Request-ID"] = rid
        return response

app.add_middleware(RequestIdMiddleware)


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError):
    logging.getLogger("astral_api.oauth").info(
        f"{request.url.path} -> {exc.error}",
        extra={"error": exc.error, "status": exc.status_code},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict(),
                        headers={"Cache-Control": "no-store"})


app.include_router(health.router)
app.include_router(oauth.router)
app.include_router(auth_router.router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("astral_api.main:app", host="0.0.0.0", port=8000, reload=settings.is_dev)
