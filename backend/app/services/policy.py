from __future__ import annotations

import logging
from collections.abc import Iterable

from app.models.lock import PRIVILEGED_STATES, SessionState
from app.services.credentials import CredentialStore
from app.services.errors import StorageError
from app.services.sessions import SessionStore

logger = logging.getLogger(__name__)


class PolicyGate:
    """Decides whether a user may run an operation right now.

    Read-only: the gate never changes session state. Any storage failure
    denies the operation.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionStore,
        protected_operations: Iterable[str],
        *,
        enabled: bool = True,
    ) -> None:
        self._credentials = credentials
        self._sessions = sessions
        self._protected = frozenset(op.lower() for op in protected_operations)
        self._enabled = enabled

    def is_protected(self, operation: str) -> bool:
        return operation.lower() in self._protected

    def is_allowed(self, external_id: str, operation: str) -> bool:
        if not self._enabled or not self.is_protected(operation):
            return True
        try:
            return self.state_for(external_id) in PRIVILEGED_STATES
        except StorageError:
            logger.exception(
                "Session state unreadable, denying %s for %s", operation, external_id
            )
            return False

    def state_for(self, external_id: str) -> SessionState:
        """Effective state: locked when the user or session does not exist."""
        user = self._credentials.get_user(external_id)
        if user is None:
            return SessionState.LOCKED
        session = self._sessions.active_session(user.id)
        if session is None:
            return SessionState.LOCKED
        return session.session_state
