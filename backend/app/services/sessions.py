"""Persistent lock sessions.

Each user has at most one open session row (``end_time IS NULL``). Opening
a session closes the previous one in the same transaction, under a per-user
lock, so concurrent callers for the same user can never leave two open rows.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from app.models.lock import PRIVILEGED_STATES, LockSession, SessionState
from app.services.clock import Clock
from app.services.errors import SessionNotFoundError, StorageError
from app.utils.crypto import generate_session_token

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self, engine, clock: Clock) -> None:
        self._engine = engine
        self._clock = clock
        self._guard = threading.Lock()
        # user_id -> [lock, holders]; dropped once nobody holds or waits on it
        self._user_locks: dict[str, list] = {}

    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._user_locks.get(user_id)
            if entry is None:
                entry = self._user_locks[user_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._user_locks[user_id]

    @contextmanager
    def _db(self, action: str) -> Iterator[Session]:
        try:
            with Session(self._engine) as db:
                yield db
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to {action}") from exc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_session(self, user_id: str) -> LockSession | None:
        with self._db("read active session") as db:
            return db.exec(
                select(LockSession)
                .where(LockSession.user_id == user_id)
                .where(col(LockSession.end_time).is_(None))
                .order_by(col(LockSession.start_time).desc())
            ).first()

    def get(self, session_id: str) -> LockSession | None:
        with self._db("read session") as db:
            return db.get(LockSession, session_id)

    def find_by_token(self, token: str) -> LockSession | None:
        """Return the open session that owns capability *token*, if any."""
        if not token:
            return None
        with self._db("look up session token") as db:
            return db.exec(
                select(LockSession)
                .where(LockSession.token == token)
                .where(col(LockSession.end_time).is_(None))
            ).first()

    def history(self, user_id: str) -> list[LockSession]:
        with self._db("read session history") as db:
            return list(
                db.exec(
                    select(LockSession)
                    .where(LockSession.user_id == user_id)
                    .order_by(col(LockSession.start_time).desc())
                ).all()
            )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def open_session(
        self,
        user_id: str,
        state: SessionState,
        ip_address: str | None = None,
        device_fingerprint: str | None = None,
    ) -> LockSession:
        """Close any open row for *user_id* and insert a new one.

        A capability token is minted only for unlocked/override sessions.
        """
        with self._user_lock(user_id):
            now = self._clock.now()
            row = LockSession(
                user_id=user_id,
                state=state.value,
                start_time=now,
                token=generate_session_token() if state in PRIVILEGED_STATES else None,
                ip_address=ip_address,
                device_fingerprint=device_fingerprint,
            )
            with self._db("open session") as db:
                db.exec(
                    update(LockSession)
                    .where(LockSession.user_id == user_id)
                    .where(col(LockSession.end_time).is_(None))
                    .values(end_time=now)
                )
                db.add(row)
                db.commit()
                db.refresh(row)
        logger.debug("Opened %s session %s for user %s", state.value, row.id, user_id)
        return row

    def transition(self, session_id: str, new_state: SessionState) -> LockSession:
        """Change a session's state in place (start_time and token untouched)."""
        row = self.get(session_id)
        if row is None:
            raise SessionNotFoundError(f"Session {session_id} does not exist")
        with self._user_lock(row.user_id):
            with self._db("transition session") as db:
                row = db.get(LockSession, session_id)
                if row is None:
                    raise SessionNotFoundError(f"Session {session_id} does not exist")
                previous = row.state
                row.state = new_state.value
                db.add(row)
                db.commit()
                db.refresh(row)
        logger.debug("Session %s: %s -> %s", session_id, previous, new_state.value)
        return row

    def close_session(self, session_id: str) -> LockSession:
        row = self.get(session_id)
        if row is None:
            raise SessionNotFoundError(f"Session {session_id} does not exist")
        with self._user_lock(row.user_id):
            with self._db("close session") as db:
                row = db.get(LockSession, session_id)
                if row is None:
                    raise SessionNotFoundError(f"Session {session_id} does not exist")
                if row.end_time is None:
                    row.end_time = self._clock.now()
                    db.add(row)
                    db.commit()
                    db.refresh(row)
        return row

    def sweep_expired(self, timeout: timedelta) -> list[str]:
        """Re-lock open unlocked/override sessions older than *timeout*.

        Rows are transitioned in place rather than closed, so the next
        unlock continues from the locked row. Returns the affected user ids.
        """
        cutoff = self._clock.now() - timeout
        with self._db("scan expired sessions") as db:
            expired = db.exec(
                select(LockSession)
                .where(col(LockSession.end_time).is_(None))
                .where(col(LockSession.state).in_([s.value for s in PRIVILEGED_STATES]))
                .where(LockSession.start_time < cutoff)
            ).all()
            candidates = [(row.id, row.user_id) for row in expired]

        user_ids: list[str] = []
        for session_id, user_id in candidates:
            with self._user_lock(user_id):
                with self._db("re-lock expired session") as db:
                    row = db.get(LockSession, session_id)
                    # Skip rows that changed since the scan (closed or re-granted)
                    if (
                        row is None
                        or row.end_time is not None
                        or not row.is_privileged
                        or row.start_time >= cutoff
                    ):
                        continue
                    row.state = SessionState.LOCKED.value
                    db.add(row)
                    db.commit()
            user_ids.append(user_id)
        return user_ids

    def relock_pending(self) -> list[str]:
        """Lock every open row left pending by a previous process."""
        with self._db("scan pending sessions") as db:
            rows = db.exec(
                select(LockSession)
                .where(col(LockSession.end_time).is_(None))
                .where(LockSession.state == SessionState.PENDING.value)
            ).all()
            candidates = [row.id for row in rows]

        user_ids: list[str] = []
        for session_id in candidates:
            row = self.transition(session_id, SessionState.LOCKED)
            user_ids.append(row.user_id)
        return user_ids
