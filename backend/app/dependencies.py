"""FastAPI dependency injection for the BioLock service and capability tokens."""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.models.lock import LockSession
from app.services.biolock import LockService
from app.services.errors import StorageError

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def get_lock_service(request: Request) -> LockService:
    """Inject the LockService singleton from app state."""
    svc = getattr(request.app.state, "lock_service", None)
    if svc is None:
        raise HTTPException(
            status_code=503,
            detail="BioLock service unavailable",
        )
    return svc


def get_current_lock_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    service: LockService = Depends(get_lock_service),
) -> LockSession:
    """Resolve the Bearer capability token to its open session.

    Raises HTTPException 401 unless the token belongs to an open session
    that is currently unlocked or in override. A session that was re-locked
    or superseded stops authorizing immediately.
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        session = service.session_for_token(credentials.credentials)
    except StorageError:
        logger.exception("Session lookup failed")
        raise HTTPException(status_code=503, detail="Session store unavailable")
    if session is None:
        raise HTTPException(
            status_code=401, detail="Session is locked or expired, please re-authenticate"
        )
    return session
