from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies import get_current_lock_session, get_lock_service
from app.models.lock import AuditEventRead, LockSession, LockSessionRead, SessionStatusResponse
from app.services.biolock import LockService
from app.services.errors import StorageError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/lock", tags=["lock"])


@router.get("/session", response_model=SessionStatusResponse)
def session_status(
    lock_session: LockSession = Depends(get_current_lock_session),
    service: LockService = Depends(get_lock_service),
):
    """Describe the session that owns the presented capability token."""
    return SessionStatusResponse(
        session=LockSessionRead.model_validate(lock_session),
        expires_at=service.expires_at(lock_session),
    )


@router.get("/audit", response_model=list[AuditEventRead])
def audit_events(
    limit: int = Query(default=50, ge=1, le=500),
    lock_session: LockSession = Depends(get_current_lock_session),
    service: LockService = Depends(get_lock_service),
):
    try:
        events = service.recent_audit(lock_session.user_id, limit=limit)
    except StorageError:
        logger.exception("Failed to read audit events for user %s", lock_session.user_id)
        raise HTTPException(status_code=503, detail="Audit log unavailable")
    return [AuditEventRead.model_validate(e) for e in events]
