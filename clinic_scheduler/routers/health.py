# clinic_scheduler/routers/health.py
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import crud
from ..config import get_settings
from ..database import get_db

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
)


@router.get("")
def health_check(db: Session = Depends(get_db)):
    """Liveness plus a database round trip. Returns 503 when the database is unreachable."""
    settings = get_settings()
    database_ok = crud.ping(db)
    body = {
        "status": "ok" if database_ok else "degraded",
        "database": "ok" if database_ok else "unreachable",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if database_ok else 503, content=body)
