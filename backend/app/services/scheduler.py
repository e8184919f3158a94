from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from app.models.lock import AuditEventType
from app.services.audit import AuditLog
from app.services.sessions import SessionStore

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Periodically re-lock unlocked/override sessions past their timeout."""

    def __init__(
        self,
        sessions: SessionStore,
        audit: AuditLog,
        *,
        session_timeout: timedelta,
        interval_seconds: float = 300,
    ) -> None:
        self._sessions = sessions
        self._audit = audit
        self._session_timeout = session_timeout
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> list[str]:
        """Run one sweep and audit every session it re-locked."""
        user_ids = self._sessions.sweep_expired(self._session_timeout)
        minutes = int(self._session_timeout.total_seconds() // 60)
        for user_id in user_ids:
            await self._audit.record(
                AuditEventType.SESSION_EXPIRED,
                True,
                user_id=user_id,
                details=f"Session expired after {minutes} minutes",
            )
        if user_ids:
            logger.info("Session sweep: re-locked %d expired session(s)", len(user_ids))
        return user_ids

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="biolock-session-sweep")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Session sweep error")
