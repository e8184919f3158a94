from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from app.db import get_session

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {exc}"

    # BioLock runtime state (does not touch sessions)
    lock_status: dict = {"status": "unavailable"}
    service = getattr(request.app.state, "lock_service", None)
    if service is not None:
        lock_status = {
            "status": "ok",
            "enabled": service.settings.biolock_enabled,
            "override_enabled": service.override.enabled,
            "pending_challenges": service.coordinator.pending_count,
            "session_sweep": "running" if service.scheduler.running else "stopped",
        }

    is_healthy = db_status == "ok" and lock_status["status"] == "ok"

    return {
        "status": "healthy" if is_healthy else "unhealthy",
        "service": "biolock",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "biolock": lock_status,
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": "biolock",
                "error": str(exc),
            },
        )

    return {
        "status": "ready",
        "service": "biolock",
    }
