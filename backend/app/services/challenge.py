"""Out-of-band passphrase challenges: the Locked -> Pending -> Unlocked flow.

At most one challenge (or registration) is in flight per user. Each unlock
challenge owns a single collector task that waits for private replies until
the challenge deadline. Whichever of reply, timeout or shutdown resolves the
challenge first wins; the losers find the pending entry gone (or owned by a
newer challenge instance) and do nothing.

All operations for one user are serialized by a per-user asyncio.Lock.
Operations for different users never contend.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import uuid4

from app.models.lock import AuditEventType, LockSession, SessionState
from app.services.audit import AuditLog
from app.services.channel import Channel, ChannelHandle, any_reply
from app.services.clock import Clock
from app.services.credentials import CredentialStore
from app.services.errors import (
    AlreadyPendingError,
    AlreadyRegisteredError,
    ChallengeInProgressError,
    ChallengeTimeoutError,
    ChannelError,
    LockError,
    NoActiveSessionError,
    NotRegisteredError,
)
from app.services.sessions import SessionStore
from app.utils.crypto import constant_time_equals
from app.utils.device import host_fingerprint

logger = logging.getLogger(__name__)


class ChallengePurpose(str, Enum):
    UNLOCK = "unlock"
    REGISTRATION = "registration"


class AttemptStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    LOCKED_OUT = "locked_out"


class ChallengeResult(str, Enum):
    UNLOCKED = "unlocked"
    LOCKED_OUT = "locked_out"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class AttemptOutcome:
    status: AttemptStatus
    remaining: int = 0
    session: LockSession | None = None  # set when ACCEPTED


@dataclass(slots=True, eq=False)
class PendingChallenge:
    external_id: str
    purpose: ChallengePurpose
    started_at: datetime
    user_id: str | None = None
    attempts: int = 0
    channel_handle: ChannelHandle | None = None
    ip_address: str | None = None
    device_fingerprint: str | None = None
    challenge_id: str = field(default_factory=lambda: uuid4().hex)
    task: asyncio.Task | None = None
    result: asyncio.Future | None = None


class ChallengeCoordinator:
    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionStore,
        audit: AuditLog,
        channel: Channel,
        clock: Clock,
        *,
        max_attempts: int = 5,
        challenge_timeout: float = 60.0,
        registration_prompt_timeout: float = 30.0,
        registration_timeout: float = 120.0,
        registration_confirm_timeout: float = 60.0,
        min_passphrase_length: int = 8,
        command_prefix: str = "!",
    ) -> None:
        self._credentials = credentials
        self._sessions = sessions
        self._audit = audit
        self._channel = channel
        self._clock = clock
        self._max_attempts = max_attempts
        self._challenge_timeout = challenge_timeout
        self._registration_prompt_timeout = registration_prompt_timeout
        self._registration_timeout = registration_timeout
        self._registration_confirm_timeout = registration_confirm_timeout
        self._min_passphrase_length = min_passphrase_length
        self._prefix = command_prefix
        self._device_info = host_fingerprint()
        # external_id -> [lock, holders]; dropped once nobody holds or waits on it
        self._locks: dict[str, list] = {}
        self._pending: dict[str, PendingChallenge] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def pending(self, external_id: str) -> PendingChallenge | None:
        return self._pending.get(external_id)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def wait_for_result(self, pending: PendingChallenge) -> ChallengeResult:
        """Wait until *pending* resolves. Cancelling the waiter leaves it running."""
        return await asyncio.shield(pending.result)

    # ------------------------------------------------------------------
    # Unlock challenge
    # ------------------------------------------------------------------

    async def begin_unlock(
        self,
        external_id: str,
        *,
        ip_address: str | None = None,
        device_fingerprint: str | None = None,
    ) -> PendingChallenge:
        """Move the user's session to pending and send the passphrase prompt."""
        async with self._serialized(external_id):
            if external_id in self._pending:
                raise AlreadyPendingError(
                    "Authentication already in progress. Please check your DMs."
                )
            user = self._credentials.get_user(external_id)
            if user is None:
                raise NotRegisteredError(f"No BioLock profile for {external_id}")

            session = self._sessions.active_session(user.id)
            if session is None:
                session = self._sessions.open_session(user.id, SessionState.LOCKED)
            self._sessions.transition(session.id, SessionState.PENDING)

            pending = PendingChallenge(
                external_id=external_id,
                purpose=ChallengePurpose.UNLOCK,
                started_at=self._clock.now(),
                user_id=user.id,
                ip_address=ip_address,
                device_fingerprint=device_fingerprint,
            )
            pending.result = asyncio.get_running_loop().create_future()
            self._pending[external_id] = pending

            try:
                pending.channel_handle = await self._channel.send_private(
                    external_id,
                    "🔐 BioLock Authentication\n"
                    "Please enter your passphrase to unlock your session.\n"
                    "Reply to this message with your passphrase.",
                )
            except ChannelError:
                self._relock_if_pending(user.id)
                self._finish(pending, ChallengeResult.CANCELLED)
                await self._audit.record(
                    AuditEventType.AUTH_CANCELLED,
                    False,
                    user_id=user.id,
                    details="Challenge prompt could not be delivered",
                )
                raise

            pending.task = asyncio.create_task(
                self._collect(pending), name=f"biolock-challenge-{external_id}"
            )
            await self._audit.record(
                AuditEventType.CHALLENGE_STARTED,
                True,
                user_id=user.id,
                ip_address=ip_address,
                details=(
                    f"Passphrase challenge sent ({self._max_attempts} attempts, "
                    f"{self._challenge_timeout:g}s)"
                ),
            )
        logger.info("Started unlock challenge for user %s", user.id)
        return pending

    async def submit_attempt(
        self, external_id: str, passphrase: str, *, challenge_id: str | None = None
    ) -> AttemptOutcome | None:
        """Check one passphrase reply against the pending challenge.

        Returns None (and changes nothing) when no unlock challenge is in
        progress for the user, or when *challenge_id* names a challenge
        that has already been resolved.
        """
        async with self._serialized(external_id):
            pending = self._pending.get(external_id)
            if (
                pending is None
                or pending.purpose is not ChallengePurpose.UNLOCK
                or (challenge_id is not None and challenge_id != pending.challenge_id)
            ):
                logger.warning(
                    "Ignoring passphrase attempt for %s: no challenge in progress",
                    external_id,
                )
                return None

            pending.attempts += 1
            attempts = pending.attempts

            # Argon2 runs off the event loop
            verified = await asyncio.to_thread(
                self._credentials.verify, external_id, passphrase
            )
            if self._pending.get(external_id) is not pending:
                # Resolved by shutdown while the digest was being checked
                return None
            if verified:
                # Audit row first: a grant is never left without its record
                await self._audit.record(
                    AuditEventType.AUTHENTICATION,
                    True,
                    user_id=pending.user_id,
                    ip_address=pending.ip_address,
                    device_info=self._device_info,
                    details="User authenticated successfully",
                )
                self._credentials.touch_last_auth(external_id)
                session = self._sessions.open_session(
                    pending.user_id,
                    SessionState.UNLOCKED,
                    ip_address=pending.ip_address,
                    device_fingerprint=pending.device_fingerprint,
                )
                self._finish(pending, ChallengeResult.UNLOCKED)
                await self._notify(
                    external_id, "✅ Authentication successful! Your session is now unlocked."
                )
                return AttemptOutcome(AttemptStatus.ACCEPTED, session=session)

            if attempts < self._max_attempts:
                await self._audit.record(
                    AuditEventType.AUTHENTICATION,
                    False,
                    user_id=pending.user_id,
                    ip_address=pending.ip_address,
                    device_info=self._device_info,
                    details=f"Failed authentication attempt {attempts}/{self._max_attempts}",
                )
                await self._notify(
                    external_id,
                    "❌ Incorrect passphrase. Please try again. "
                    f"(Attempt {attempts}/{self._max_attempts})",
                )
                return AttemptOutcome(
                    AttemptStatus.REJECTED, remaining=self._max_attempts - attempts
                )

            self._relock_if_pending(pending.user_id)
            self._finish(pending, ChallengeResult.LOCKED_OUT)
            await self._audit.record(
                AuditEventType.AUTH_LOCKOUT,
                False,
                user_id=pending.user_id,
                ip_address=pending.ip_address,
                details=f"User locked out after {attempts} failed attempts",
            )
            await self._notify(
                external_id,
                "❌ Too many failed attempts. Authentication process locked. "
                "Please try again later.",
            )
            return AttemptOutcome(AttemptStatus.LOCKED_OUT)

    async def cancel_on_timeout(
        self, external_id: str, *, challenge_id: str | None = None
    ) -> bool:
        """Expire the user's unlock challenge. Returns False if nothing to expire."""
        async with self._serialized(external_id):
            pending = self._pending.get(external_id)
            if (
                pending is None
                or pending.purpose is not ChallengePurpose.UNLOCK
                or (challenge_id is not None and challenge_id != pending.challenge_id)
            ):
                return False

            self._relock_if_pending(pending.user_id)
            self._finish(pending, ChallengeResult.TIMED_OUT)
            await self._audit.record(
                AuditEventType.AUTH_TIMEOUT,
                False,
                user_id=pending.user_id,
                ip_address=pending.ip_address,
                details="Authentication timed out",
            )
            await self._notify(
                external_id,
                "⏰ Authentication timed out. "
                f"Please use `{self._prefix}unlock` in the server to try again.",
            )
        logger.info("Unlock challenge for user %s timed out", pending.user_id)
        return True

    async def lock(self, external_id: str) -> LockSession:
        """Re-lock the user's active session on request."""
        async with self._serialized(external_id):
            if external_id in self._pending:
                raise ChallengeInProgressError(
                    "Finish or cancel the current challenge first."
                )
            user = self._credentials.get_user(external_id)
            if user is None:
                raise NotRegisteredError(f"No BioLock profile for {external_id}")
            session = self._sessions.active_session(user.id)
            if session is None:
                raise NoActiveSessionError(f"No active session for {external_id}")

            session = self._sessions.transition(session.id, SessionState.LOCKED)
            await self._audit.record(
                AuditEventType.SESSION_LOCKED,
                True,
                user_id=user.id,
                details="Session locked by user",
            )
        return session

    # ------------------------------------------------------------------
    # Registration sub-flow
    # ------------------------------------------------------------------

    async def register_via_channel(
        self, external_id: str, *, device_info: str | None = None
    ) -> str | None:
        """Walk an unknown user through passphrase registration.

        Returns the new user id, or None when the user declined, timed out
        or mistyped the confirmation. Raises ChannelError if the first
        message cannot be delivered.
        """
        async with self._serialized(external_id):
            if external_id in self._pending:
                raise AlreadyPendingError(
                    "Authentication already in progress. Please check your DMs."
                )
            if self._credentials.get_user(external_id) is not None:
                raise AlreadyRegisteredError(f"{external_id} is already registered")
            pending = PendingChallenge(
                external_id=external_id,
                purpose=ChallengePurpose.REGISTRATION,
                started_at=self._clock.now(),
            )
            self._pending[external_id] = pending

        try:
            return await self._run_registration(pending, device_info or self._device_info)
        finally:
            if self._pending.get(external_id) is pending:
                del self._pending[external_id]

    async def _run_registration(
        self, pending: PendingChallenge, device_info: str
    ) -> str | None:
        external_id = pending.external_id
        handle = await self._channel.send_private(
            external_id,
            "You are not registered with BioLock. Would you like to create a "
            "profile? Reply with `yes` to continue.",
        )
        pending.channel_handle = handle

        try:
            answer = await self._channel.await_one_reply(
                handle, _is_yes_or_no, self._registration_prompt_timeout
            )
        except ChallengeTimeoutError:
            answer = "no"
        if answer.strip().lower() != "yes":
            await self._notify(external_id, "Registration cancelled.")
            await self._registration_failed(external_id, "declined")
            return None

        await self._notify(
            external_id,
            "🔐 BioLock Registration\n"
            "Please create a passphrase to secure your BioLock profile.\n"
            "Reply to this message with your desired passphrase "
            f"(at least {self._min_passphrase_length} characters).",
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._registration_timeout
        while True:
            try:
                passphrase = await self._channel.await_one_reply(
                    handle, any_reply, max(0.0, deadline - loop.time())
                )
            except ChallengeTimeoutError:
                await self._notify(
                    external_id,
                    "⏰ Registration timed out. "
                    f"Please use `{self._prefix}unlock` in the server to try again.",
                )
                await self._registration_failed(external_id, "timed out waiting for passphrase")
                return None
            if len(passphrase) >= self._min_passphrase_length:
                break
            await self._notify(
                external_id,
                f"⚠️ Passphrase must be at least {self._min_passphrase_length} "
                "characters long. Please try again.",
            )

        await self._notify(external_id, "Please confirm your passphrase by entering it again:")
        try:
            confirmation = await self._channel.await_one_reply(
                handle, any_reply, self._registration_confirm_timeout
            )
        except ChallengeTimeoutError:
            await self._notify(
                external_id,
                "⏰ Confirmation timed out. Registration cancelled. "
                f"Please use `{self._prefix}unlock` to try again.",
            )
            await self._registration_failed(external_id, "timed out waiting for confirmation")
            return None

        if not constant_time_equals(passphrase, confirmation):
            await self._notify(
                external_id,
                "❌ Passphrases do not match. Registration cancelled. "
                f"Please use `{self._prefix}unlock` to try again.",
            )
            await self._registration_failed(external_id, "confirmation mismatch")
            return None

        try:
            user_id = await asyncio.to_thread(
                self._credentials.register, external_id, passphrase, device_info
            )
        except AlreadyRegisteredError:
            await self._notify(
                external_id,
                "❌ Registration failed. Please try again later or contact an administrator.",
            )
            await self._registration_failed(external_id, "already registered")
            return None

        self._sessions.open_session(user_id, SessionState.LOCKED)
        await self._audit.record(
            AuditEventType.REGISTRATION,
            True,
            user_id=user_id,
            device_info=device_info,
            details="User registered with BioLock",
        )
        await self._notify(
            external_id,
            "✅ Registration successful! You can now use "
            f"`{self._prefix}unlock` to authenticate for sensitive commands.",
        )
        return user_id

    async def _registration_failed(self, external_id: str, reason: str) -> None:
        # No user row exists yet, so the event carries no user id
        await self._audit.record(
            AuditEventType.REGISTRATION,
            False,
            details=f"Registration for {external_id} did not complete: {reason}",
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def recover_abandoned(self) -> list[str]:
        """Lock sessions a previous process left pending mid-challenge."""
        user_ids = self._sessions.relock_pending()
        for user_id in user_ids:
            await self._audit.record(
                AuditEventType.AUTH_CANCELLED,
                False,
                user_id=user_id,
                details="Challenge abandoned by a previous process",
            )
        if user_ids:
            logger.info("Re-locked %d session(s) left pending at last shutdown", len(user_ids))
        return user_ids

    async def shutdown(self) -> None:
        """Abandon every in-flight challenge and re-lock its session."""
        pendings = list(self._pending.values())
        tasks = [p.task for p in pendings if p.task is not None and not p.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for pending in pendings:
            if self._pending.get(pending.external_id) is not pending:
                continue
            self._finish(pending, ChallengeResult.CANCELLED)
            if pending.purpose is not ChallengePurpose.UNLOCK:
                continue
            try:
                self._relock_if_pending(pending.user_id)
                await self._audit.record(
                    AuditEventType.AUTH_CANCELLED,
                    False,
                    user_id=pending.user_id,
                    details="Challenge abandoned at shutdown",
                )
            except LockError:
                logger.exception("Could not re-lock user %s at shutdown", pending.user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _collect(self, pending: PendingChallenge) -> None:
        """Feed private replies into submit_attempt until the deadline."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._challenge_timeout
        try:
            while True:
                try:
                    text = await self._channel.await_one_reply(
                        pending.channel_handle, any_reply, max(0.0, deadline - loop.time())
                    )
                except ChallengeTimeoutError:
                    await self.cancel_on_timeout(
                        pending.external_id, challenge_id=pending.challenge_id
                    )
                    return
                outcome = await self.submit_attempt(
                    pending.external_id, text, challenge_id=pending.challenge_id
                )
                if outcome is None or outcome.status is not AttemptStatus.REJECTED:
                    return
        except Exception:
            logger.exception("Challenge collector for %s failed", pending.external_id)
            await self._abort(pending)

    async def _abort(self, pending: PendingChallenge) -> None:
        async with self._serialized(pending.external_id):
            if self._pending.get(pending.external_id) is not pending:
                return
            self._finish(pending, ChallengeResult.CANCELLED)
            try:
                self._relock_if_pending(pending.user_id)
                await self._audit.record(
                    AuditEventType.AUTH_CANCELLED,
                    False,
                    user_id=pending.user_id,
                    details="Challenge aborted after an internal error",
                )
            except LockError:
                logger.exception("Could not re-lock user %s after a failed challenge", pending.user_id)

    @asynccontextmanager
    async def _serialized(self, external_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(external_id)
        if entry is None:
            entry = self._locks[external_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[external_id]

    def _finish(self, pending: PendingChallenge, result: ChallengeResult) -> None:
        if self._pending.get(pending.external_id) is pending:
            del self._pending[pending.external_id]
        if pending.result is not None and not pending.result.done():
            pending.result.set_result(result)
        task = pending.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _relock_if_pending(self, user_id: str | None) -> None:
        if user_id is None:
            return
        session = self._sessions.active_session(user_id)
        if session is not None and session.session_state is SessionState.PENDING:
            self._sessions.transition(session.id, SessionState.LOCKED)

    async def _notify(self, external_id: str, text: str) -> None:
        try:
            await self._channel.send_private(external_id, text)
        except ChannelError:
            logger.warning("Could not deliver BioLock message to %s", external_id)


def _is_yes_or_no(text: str) -> bool:
    return text.strip().lower() in ("yes", "no")
