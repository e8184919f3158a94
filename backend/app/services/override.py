from __future__ import annotations

import logging

from app.models.lock import AuditEventType, LockSession, SessionState
from app.services.audit import AuditLog
from app.services.credentials import CredentialStore
from app.services.errors import InvalidOverrideError, NotRegisteredError, OverrideDisabledError
from app.services.sessions import SessionStore
from app.utils.crypto import constant_time_equals
from app.utils.device import host_fingerprint

logger = logging.getLogger(__name__)


class OverrideGate:
    """Emergency bypass: a static operator secret grants an override session.

    The secret arrives in plaintext with the command, so the caller must
    delete or redact the triggering message whatever the outcome.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionStore,
        audit: AuditLog,
        *,
        enabled: bool,
        secret: str,
    ) -> None:
        self._credentials = credentials
        self._sessions = sessions
        self._audit = audit
        self._enabled = enabled and bool(secret)
        self._secret = secret

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def attempt_override(
        self,
        external_id: str,
        supplied_secret: str,
        *,
        ip_address: str | None = None,
        device_fingerprint: str | None = None,
    ) -> LockSession:
        if not self._enabled:
            raise OverrideDisabledError("Override functionality is disabled.")

        user = self._credentials.get_user(external_id)
        if user is None:
            raise NotRegisteredError(
                "You need to be registered with BioLock to use override."
            )

        if not constant_time_equals(supplied_secret, self._secret):
            await self._audit.record(
                AuditEventType.OVERRIDE,
                False,
                user_id=user.id,
                ip_address=ip_address,
                device_info=host_fingerprint(),
                details="Failed override attempt",
            )
            logger.warning("Rejected override attempt for user %s", user.id)
            raise InvalidOverrideError("Invalid override passphrase.")

        session = self._sessions.open_session(
            user.id,
            SessionState.OVERRIDE,
            ip_address=ip_address,
            device_fingerprint=device_fingerprint,
        )
        await self._audit.record(
            AuditEventType.OVERRIDE,
            True,
            user_id=user.id,
            ip_address=ip_address,
            device_info=host_fingerprint(),
            details="User used emergency override",
        )
        return session
