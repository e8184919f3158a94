"""BioLock models: registered users, lock sessions and the audit trail.

Includes SQLModel tables for the three persisted collections plus Pydantic
read schemas. Passphrase digests and capability tokens never appear in a
read schema.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SessionState(str, Enum):
    LOCKED = "locked"
    PENDING = "pending"
    UNLOCKED = "unlocked"
    OVERRIDE = "override"


# States that grant access to protected operations
PRIVILEGED_STATES = frozenset({SessionState.UNLOCKED, SessionState.OVERRIDE})


class AuditEventType(str, Enum):
    REGISTRATION = "REGISTRATION"
    CHALLENGE_STARTED = "CHALLENGE_STARTED"
    AUTHENTICATION = "AUTHENTICATION"
    AUTH_LOCKOUT = "AUTH_LOCKOUT"
    AUTH_TIMEOUT = "AUTH_TIMEOUT"
    AUTH_CANCELLED = "AUTH_CANCELLED"
    SESSION_LOCKED = "SESSION_LOCKED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    OVERRIDE = "OVERRIDE"


class LockUser(SQLModel, table=True):
    __tablename__ = "biolock_users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    external_id: str = Field(index=True, unique=True)  # chat-platform user id
    passphrase_digest: str  # Argon2id PHC string
    last_auth_at: datetime | None = Field(default=None)
    device_info: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class LockSession(SQLModel, table=True):
    __tablename__ = "biolock_sessions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="biolock_users.id", index=True)
    state: str = Field(default=SessionState.LOCKED.value)
    start_time: datetime = Field(default_factory=_utcnow)
    end_time: datetime | None = Field(default=None, index=True)  # NULL = active
    token: str | None = Field(default=None, index=True)  # 64 hex chars
    ip_address: str | None = Field(default=None)
    device_fingerprint: str | None = Field(default=None)

    @property
    def session_state(self) -> SessionState:
        return SessionState(self.state)

    @property
    def is_privileged(self) -> bool:
        return self.session_state in PRIVILEGED_STATES


class AuditEvent(SQLModel, table=True):
    __tablename__ = "biolock_audit"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str | None = Field(default=None, foreign_key="biolock_users.id", index=True)
    event_type: str = Field(index=True)
    timestamp: datetime = Field(default_factory=_utcnow)
    success: bool = Field(default=False)
    ip_address: str | None = Field(default=None)
    device_info: str | None = Field(default=None)
    details: str | None = Field(default=None)


# --- Pydantic schemas for API responses ---


class LockSessionRead(BaseModel):
    id: str
    user_id: str
    state: str
    start_time: datetime
    end_time: datetime | None
    ip_address: str | None
    device_fingerprint: str | None

    model_config = {"from_attributes": True}


class AuditEventRead(BaseModel):
    id: str
    user_id: str | None
    event_type: str
    timestamp: datetime
    success: bool
    ip_address: str | None
    device_info: str | None
    details: str | None

    model_config = {"from_attributes": True}


class SessionStatusResponse(BaseModel):
    session: LockSessionRead
    expires_at: datetime
