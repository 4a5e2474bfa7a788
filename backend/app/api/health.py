from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from app.db.database import get_db
from app.core.config import settings, logger

router = APIRouter()

@router.get('/healthz')
def healthz():
    return {"status": "ok", "service": settings.APP_NAME}

@router.get('/readyz')
async def readyz(request: Request, db: AsyncSession = Depends(get_db)):
    checks = {"database": "ok", "identity": "ok"}

    try:
        await db.execute(text('SELECT 1'))
    except Exception:
        logger.exception('Readiness DB check failed')
        checks["database"] = "unavailable"

    # Only presence is checked; the provider itself is probed per request
    if getattr(request.app.state, "identity", None) is None:
        checks["identity"] = "not configured"

    if any(value != "ok" for value in checks.values()):
        return JSONResponse(status_code=503, content={"status": "not ready", "checks": checks})
    return {"status": "ready", "checks": checks}
