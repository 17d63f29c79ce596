"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
verifies database connectivity and reports which sync components are up.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.backoffice.config import get_settings
from src.backoffice.core.database import get_engine

router = APIRouter(tags=["health"])

_COMPONENTS = ("sync_queue", "queue_processor", "sync_service", "reconciler")


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the database answers, 503 otherwise."""
    checks: dict = {"database": "ok"}
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    for name in _COMPONENTS:
        checks[name] = "ok" if getattr(request.app.state, name, None) is not None else "unavailable"

    processor = getattr(request.app.state, "queue_processor", None)
    checks["worker"] = "running" if processor is not None and processor.running else "stopped"

    healthy = checks["database"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )
