"""BioLock service: composition root and command surface.

``LockService.build`` wires the credential, session and audit stores, the
challenge coordinator, both gates and the sweep scheduler from explicit
dependencies. Nothing in this package is a module-level singleton; the
application shell builds one service at startup and keeps it on
``app.state``.

The ``handle_*`` methods back the chat commands (``lock``, ``unlock``,
``override``) and return the text to reply with. Authentication failures
are expected outcomes and become denial messages, never exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx
from argon2 import PasswordHasher

from app.config import Settings
from app.models.lock import AuditEvent, LockSession, SessionState
from app.services.audit import AuditLog
from app.services.challenge import (
    AttemptOutcome,
    AttemptStatus,
    ChallengeCoordinator,
    ChallengePurpose,
    ChallengeResult,
)
from app.services.channel import Channel
from app.services.clock import Clock
from app.services.credentials import CredentialStore
from app.services.errors import (
    AlreadyPendingError,
    AlreadyRegisteredError,
    ChallengeCancelledError,
    ChallengeInProgressError,
    ChallengeTimeoutError,
    ChannelError,
    InvalidOverrideError,
    LockoutError,
    NoActiveSessionError,
    NotRegisteredError,
    OverrideDisabledError,
    StorageError,
)
from app.services.override import OverrideGate
from app.services.policy import PolicyGate
from app.services.scheduler import SweepScheduler
from app.services.sessions import SessionStore
from app.utils.crypto import make_password_hasher

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandReply:
    text: str
    delete_trigger: bool = False  # the triggering message carried a secret


class LockService:
    def __init__(
        self,
        settings: Settings,
        *,
        clock: Clock,
        credentials: CredentialStore,
        sessions: SessionStore,
        audit: AuditLog,
        coordinator: ChallengeCoordinator,
        policy: PolicyGate,
        override: OverrideGate,
        scheduler: SweepScheduler,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.credentials = credentials
        self.sessions = sessions
        self.audit = audit
        self.coordinator = coordinator
        self.policy = policy
        self.override = override
        self.scheduler = scheduler
        self._prefix = settings.command_prefix

    @classmethod
    def build(
        cls,
        settings: Settings,
        engine,
        channel: Channel,
        *,
        clock: Clock | None = None,
        http_client: httpx.AsyncClient | None = None,
        hasher: PasswordHasher | None = None,
    ) -> LockService:
        clock = clock if clock is not None else Clock()
        if hasher is None:
            hasher = make_password_hasher(
                time_cost=settings.argon2_time_cost,
                memory_cost=settings.argon2_memory_cost,
                parallelism=settings.argon2_parallelism,
            )
        credentials = CredentialStore(engine, clock, hasher)
        sessions = SessionStore(engine, clock)
        audit = AuditLog(
            engine,
            clock,
            settings.audit_webhook_url,
            http_client=http_client,
            timeout=settings.audit_webhook_timeout_seconds,
        )
        coordinator = ChallengeCoordinator(
            credentials,
            sessions,
            audit,
            channel,
            clock,
            max_attempts=settings.max_failed_attempts,
            challenge_timeout=settings.challenge_timeout_seconds,
            registration_prompt_timeout=settings.registration_prompt_timeout_seconds,
            registration_timeout=settings.registration_timeout_seconds,
            registration_confirm_timeout=settings.registration_confirm_timeout_seconds,
            min_passphrase_length=settings.min_passphrase_length,
            command_prefix=settings.command_prefix,
        )
        policy = PolicyGate(
            credentials,
            sessions,
            settings.protected_operations,
            enabled=settings.biolock_enabled,
        )
        override = OverrideGate(
            credentials,
            sessions,
            audit,
            enabled=settings.override_enabled,
            secret=settings.override_secret,
        )
        scheduler = SweepScheduler(
            sessions,
            audit,
            session_timeout=timedelta(minutes=settings.session_timeout_minutes),
            interval_seconds=settings.session_sweep_interval_seconds,
        )
        return cls(
            settings,
            clock=clock,
            credentials=credentials,
            sessions=sessions,
            audit=audit,
            coordinator=coordinator,
            policy=policy,
            override=override,
            scheduler=scheduler,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.coordinator.recover_abandoned()
        self.scheduler.start()
        logger.info("BioLock started (enabled=%s)", self.settings.biolock_enabled)

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.coordinator.shutdown()
        await self.audit.close()
        logger.info("BioLock stopped")

    # ------------------------------------------------------------------
    # Guard
    # ------------------------------------------------------------------

    def is_allowed(self, external_id: str, operation: str) -> bool:
        return self.policy.is_allowed(external_id, operation)

    def denial_message(self, external_id: str) -> str:
        try:
            state = self.policy.state_for(external_id)
        except StorageError:
            state = SessionState.LOCKED
        if state is SessionState.PENDING:
            return (
                "Authentication in progress. Please complete the authentication "
                "process in your DMs."
            )
        return (
            "🔒 This command requires authentication. "
            f"Use `{self._prefix}unlock` to authenticate first."
        )

    async def authenticate(
        self,
        external_id: str,
        *,
        ip_address: str | None = None,
        device_fingerprint: str | None = None,
    ) -> LockSession:
        """Run a full challenge and wait for it to resolve.

        Returns the unlocked session or raises LockoutError,
        ChallengeTimeoutError or ChallengeCancelledError.
        """
        pending = await self.coordinator.begin_unlock(
            external_id, ip_address=ip_address, device_fingerprint=device_fingerprint
        )
        result = await self.coordinator.wait_for_result(pending)
        if result is ChallengeResult.UNLOCKED:
            session = self.sessions.active_session(pending.user_id)
            if session is not None and session.is_privileged:
                return session
            raise ChallengeCancelledError("Session changed before it could be used")
        if result is ChallengeResult.LOCKED_OUT:
            raise LockoutError(f"Locked out after {self.settings.max_failed_attempts} attempts")
        if result is ChallengeResult.TIMED_OUT:
            raise ChallengeTimeoutError("Authentication timed out")
        raise ChallengeCancelledError("Authentication was cancelled")

    # ------------------------------------------------------------------
    # Chat commands
    # ------------------------------------------------------------------

    async def handle_lock(self, external_id: str) -> CommandReply:
        if not self.settings.biolock_enabled:
            return CommandReply("BioLock system is not enabled.")
        try:
            await self.coordinator.lock(external_id)
        except NotRegisteredError:
            return CommandReply(
                "You are not registered with BioLock. Please create a BioLock profile first."
            )
        except NoActiveSessionError:
            return CommandReply("You do not have an active session to lock.")
        except ChallengeInProgressError as exc:
            return CommandReply(str(exc))
        except StorageError:
            logger.exception("Error handling lock command for %s", external_id)
            return CommandReply("An error occurred while processing your lock request.")
        return CommandReply(
            "🔒 Your session has been locked. "
            f"Use `{self._prefix}unlock` to authenticate again."
        )

    async def handle_unlock(
        self,
        external_id: str,
        passphrase: str = "",
        *,
        ip_address: str | None = None,
        device_fingerprint: str | None = None,
    ) -> CommandReply:
        """Begin a challenge, or answer the pending one when a passphrase is given."""
        if not self.settings.biolock_enabled:
            return CommandReply("BioLock system is not enabled.")
        carried_secret = bool(passphrase)
        try:
            pending = self.coordinator.pending(external_id)
            if pending is not None:
                if carried_secret and pending.purpose is ChallengePurpose.UNLOCK:
                    outcome = await self.coordinator.submit_attempt(external_id, passphrase)
                    if outcome is not None:
                        return CommandReply(self._describe(outcome), delete_trigger=True)
                return CommandReply(
                    "Authentication already in progress. Please check your DMs.",
                    delete_trigger=carried_secret,
                )

            if self.policy.state_for(external_id) is SessionState.UNLOCKED:
                return CommandReply(
                    "You are already authenticated.", delete_trigger=carried_secret
                )

            try:
                await self.coordinator.begin_unlock(
                    external_id,
                    ip_address=ip_address,
                    device_fingerprint=device_fingerprint,
                )
            except NotRegisteredError:
                return await self._register(external_id, carried_secret)
            except AlreadyPendingError as exc:
                return CommandReply(str(exc), delete_trigger=carried_secret)
            except ChannelError:
                return CommandReply(
                    "Could not send you a DM. Please ensure your DMs are open and try again.",
                    delete_trigger=carried_secret,
                )
        except StorageError:
            logger.exception("Error handling unlock command for %s", external_id)
            return CommandReply(
                "An error occurred while processing your unlock request.",
                delete_trigger=carried_secret,
            )
        return CommandReply(
            "🔑 Authentication request sent to your DMs. "
            "Please check your direct messages.",
            delete_trigger=carried_secret,
        )

    async def handle_override(
        self,
        external_id: str,
        secret: str,
        *,
        ip_address: str | None = None,
        device_fingerprint: str | None = None,
    ) -> CommandReply:
        if not self.override.enabled:
            return CommandReply("Override functionality is disabled.", delete_trigger=bool(secret))
        if not secret:
            return CommandReply(
                "Please provide the override passphrase. "
                f"Usage: `{self._prefix}override [passphrase]`"
            )
        try:
            await self.override.attempt_override(
                external_id,
                secret,
                ip_address=ip_address,
                device_fingerprint=device_fingerprint,
            )
        except OverrideDisabledError:
            return CommandReply("Override functionality is disabled.", delete_trigger=True)
        except NotRegisteredError as exc:
            return CommandReply(str(exc), delete_trigger=True)
        except InvalidOverrideError:
            return CommandReply("❌ Invalid override passphrase.", delete_trigger=True)
        except StorageError:
            logger.exception("Error handling override command for %s", external_id)
            return CommandReply(
                "An error occurred while processing your override request.",
                delete_trigger=True,
            )
        return CommandReply(
            "🔓 Emergency override accepted. "
            "You now have temporary access to protected commands.",
            delete_trigger=True,
        )

    # ------------------------------------------------------------------
    # Linked dashboard
    # ------------------------------------------------------------------

    def session_for_token(self, token: str) -> LockSession | None:
        """Return the privileged open session owning *token*, if any."""
        session = self.sessions.find_by_token(token)
        if session is None or not session.is_privileged:
            return None
        return session

    def expires_at(self, session: LockSession) -> datetime:
        return session.start_time + timedelta(minutes=self.settings.session_timeout_minutes)

    def recent_audit(self, user_id: str, limit: int = 50) -> list[AuditEvent]:
        return self.audit.recent(user_id=user_id, limit=limit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _register(self, external_id: str, carried_secret: bool) -> CommandReply:
        try:
            user_id = await self.coordinator.register_via_channel(external_id)
        except ChannelError:
            return CommandReply(
                "Could not start registration process. "
                "Please ensure your DMs are open and try again.",
                delete_trigger=carried_secret,
            )
        except (AlreadyPendingError, AlreadyRegisteredError) as exc:
            return CommandReply(str(exc), delete_trigger=carried_secret)
        if user_id is None:
            return CommandReply("Registration was not completed.", delete_trigger=carried_secret)
        return CommandReply(
            f"✅ BioLock profile created. Use `{self._prefix}unlock` to authenticate.",
            delete_trigger=carried_secret,
        )

    def _describe(self, outcome: AttemptOutcome) -> str:
        if outcome.status is AttemptStatus.ACCEPTED:
            return "✅ Authentication successful! Your session is now unlocked."
        if outcome.status is AttemptStatus.REJECTED:
            return (
                "❌ Incorrect passphrase. "
                f"{outcome.remaining} attempt(s) remaining."
            )
        return (
            "❌ Too many failed attempts. Authentication process locked. "
            f"Use `{self._prefix}unlock` to start again."
        )
