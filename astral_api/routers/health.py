import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from astral_api.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

@router.get("/healthz", summary="Process is up")
def healthz():
    return {"ok": True}

@router.get("/readyz", summary="Database is reachable")
def readyz(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("readiness check failed: %s", e)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="database not ready") from e
    return {"ok": True, "db": "ok"}
