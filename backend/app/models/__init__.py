from __future__ import annotations

from app.models.lock import AuditEvent, LockSession, LockUser  # noqa: F401
