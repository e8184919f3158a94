"""Tests for LockService: wiring and the chat command surface."""

from __future__ import annotations

import asyncio

import pytest

from app.models.lock import AuditEventType, SessionState
from app.services.biolock import LockService
from app.services.challenge import ChallengePurpose
from app.services.channel import MemoryChannel
from app.services.errors import (
    ChallengeCancelledError,
    ChallengeTimeoutError,
    LockoutError,
)

PASSPHRASE = "correct-horse"
SECRET = "break-glass-secret"


class TestBuild:
    def test_components_share_settings(self, make_service):
        service = make_service(max_failed_attempts=2, protected_operations=["deploy"])
        assert service.policy.is_protected("deploy") is True
        assert service.policy.is_protected("restart") is False
        assert service.override.enabled is False

    @pytest.mark.asyncio
    async def test_start_recovers_and_stop_cleans_up(self, lock_service: LockService, registered_user):
        lock_service.sessions.open_session(registered_user, SessionState.PENDING)
        await lock_service.start()
        assert lock_service.scheduler.running is True
        assert lock_service.policy.state_for("alice") is SessionState.LOCKED

        await lock_service.coordinator.begin_unlock("alice")
        await lock_service.stop()
        assert lock_service.scheduler.running is False
        assert lock_service.coordinator.pending_count == 0
        assert lock_service.policy.state_for("alice") is SessionState.LOCKED


class TestDenialMessage:
    def test_locked(self, lock_service: LockService, registered_user):
        msg = lock_service.denial_message("alice")
        assert "requires authentication" in msg
        assert "`!unlock`" in msg

    @pytest.mark.asyncio
    async def test_pending(self, lock_service: LockService, registered_user):
        await lock_service.coordinator.begin_unlock("alice")
        assert "Authentication in progress" in lock_service.denial_message("alice")
        await lock_service.coordinator.shutdown()

    def test_custom_prefix(self, make_service):
        service = make_service(command_prefix="?")
        assert "`?unlock`" in service.denial_message("nobody")


class TestHandleUnlock:
    @pytest.mark.asyncio
    async def test_begins_challenge(self, lock_service: LockService, channel: MemoryChannel, registered_user):
        reply = await lock_service.handle_unlock("alice", ip_address="10.0.0.3")
        assert "Authentication request sent" in reply.text
        assert reply.delete_trigger is False
        pending = lock_service.coordinator.pending("alice")
        assert pending.purpose is ChallengePurpose.UNLOCK
        assert pending.ip_address == "10.0.0.3"
        await lock_service.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_second_unlock_without_passphrase(self, lock_service: LockService, registered_user):
        await lock_service.handle_unlock("alice")
        reply = await lock_service.handle_unlock("alice")
        assert reply.text == "Authentication already in progress. Please check your DMs."
        assert lock_service.coordinator.pending("alice").attempts == 0
        await lock_service.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_passphrase_continues_challenge(self, lock_service: LockService, registered_user):
        await lock_service.handle_unlock("alice")

        wrong = await lock_service.handle_unlock("alice", "wrong")
        assert "4 attempt(s) remaining" in wrong.text
        assert wrong.delete_trigger is True

        right = await lock_service.handle_unlock("alice", PASSPHRASE)
        assert "Authentication successful" in right.text
        assert right.delete_trigger is True
        assert lock_service.is_allowed("alice", "restart") is True
        await lock_service.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_lockout_reply(self, make_service, registered_user):
        service = make_service(max_failed_attempts=1)
        await service.handle_unlock("alice")
        reply = await service.handle_unlock("alice", "wrong")
        assert "Too many failed attempts" in reply.text
        assert service.policy.state_for("alice") is SessionState.LOCKED
        await service.coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_already_authenticated(self, lock_service: LockService, registered_user):
        lock_service.sessions.open_session(registered_user, SessionState.UNLOCKED)
        reply = await lock_service.handle_unlock("alice")
        assert reply.text == "You are already authenticated."
        assert lock_service.coordinator.pending("alice") is None

    @pytest.mark.asyncio
    async def test_dms_closed(self, lock_service: LockService, channel: MemoryChannel, registered_user):
        channel.block("alice")
        reply = await lock_service.handle_unlock("alice")
        assert "Could not send you a DM" in reply.text
        assert lock_service.policy.state_for("alice") is SessionState.LOCKED

    @pytest.mark.asyncio
    async def test_unregistered_user_is_registered(
        self, lock_service: LockService, reply_when_prompted
    ):
        reply, _ = await asyncio.gather(
            lock_service.handle_unlock("bob"),
            reply_when_prompted("bob", "yes", "bob-passphrase", "bob-passphrase"),
        )
        assert "BioLock profile created" in reply.text
        assert lock_service.credentials.get_user("bob") is not None

    @pytest.mark.asyncio
    async def test_unregistered_user_declines(self, lock_service: LockService, reply_when_prompted):
        reply, _ = await asyncio.gather(
            lock_service.handle_unlock("bob"), reply_when_prompted("bob", "no")
        )
        assert reply.text == "Registration was not completed."

    @pytest.mark.asyncio
    async def test_unregistered_user_dms_closed(self, lock_service: LockService, channel: MemoryChannel):
        channel.block("bob")
        reply = await lock_service.handle_unlock("bob")
        assert "Could not start registration process" in reply.text

    @pytest.mark.asyncio
    async def test_disabled(self, make_service, registered_user):
        service = make_service(biolock_enabled=False)
        reply = await service.handle_unlock("alice")
        assert reply.text == "BioLock system is not enabled."
        assert service.is_allowed("alice", "restart") is True


class TestHandleLock:
    @pytest.mark.asyncio
    async def test_locks_session(self, lock_service: LockService, registered_user):
        lock_service.sessions.open_session(registered_user, SessionState.UNLOCKED)
        reply = await lock_service.handle_lock("alice")
        assert "Your session has been locked" in reply.text
        assert lock_service.is_allowed("alice", "restart") is False

    @pytest.mark.asyncio
    async def test_not_registered(self, lock_service: LockService):
        reply = await lock_service.handle_lock("nobody")
        assert "not registered with BioLock" in reply.text

    @pytest.mark.asyncio
    async def test_no_session(self, lock_service: LockService, registered_user):
        reply = await lock_service.handle_lock("alice")
        assert reply.text == "You do not have an active session to lock."

    @pytest.mark.asyncio
    async def test_pending(self, lock_service: LockService, registered_user):
        await lock_service.handle_unlock("alice")
        reply = await lock_service.handle_lock("alice")
        assert reply.text == "Finish or cancel the current challenge first."
        await lock_service.coordinator.shutdown()


class TestHandleOverride:
    @pytest.mark.asyncio
    async def test_disabled(self, lock_service: LockService, registered_user):
        reply = await lock_service.handle_override("alice", "anything")
        assert reply.text == "Override functionality is disabled."
        assert reply.delete_trigger is True

    @pytest.mark.asyncio
    async def test_missing_secret(self, make_service, registered_user):
        service = make_service(override_enabled=True, override_secret=SECRET)
        reply = await service.handle_override("alice", "")
        assert "Usage: `!override [passphrase]`" in reply.text
        assert reply.delete_trigger is False

    @pytest.mark.asyncio
    async def test_valid_and_invalid(self, make_service, registered_user):
        service = make_service(override_enabled=True, override_secret=SECRET)

        bad = await service.handle_override("alice", "guess")
        assert bad.text == "❌ Invalid override passphrase."
        assert bad.delete_trigger is True

        good = await service.handle_override("alice", SECRET)
        assert "Emergency override accepted" in good.text
        assert good.delete_trigger is True
        assert service.is_allowed("alice", "shutdown") is True

    @pytest.mark.asyncio
    async def test_unregistered(self, make_service):
        service = make_service(override_enabled=True, override_secret=SECRET)
        reply = await service.handle_override("nobody", SECRET)
        assert "registered with BioLock" in reply.text


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_success_returns_session(
        self, lock_service: LockService, reply_when_prompted, registered_user
    ):
        session, _ = await asyncio.wait_for(
            asyncio.gather(
                lock_service.authenticate("alice"), reply_when_prompted("alice", PASSPHRASE)
            ),
            timeout=5,
        )
        assert session.session_state is SessionState.UNLOCKED
        assert session.token is not None

    @pytest.mark.asyncio
    async def test_lockout_raises(self, make_service, reply_when_prompted, registered_user):
        service = make_service(max_failed_attempts=1)
        with pytest.raises(LockoutError):
            await asyncio.wait_for(
                asyncio.gather(
                    service.authenticate("alice"), reply_when_prompted("alice", "wrong")
                ),
                timeout=5,
            )

    @pytest.mark.asyncio
    async def test_timeout_raises(self, make_service, registered_user):
        service = make_service(challenge_timeout_seconds=0.05)
        with pytest.raises(ChallengeTimeoutError):
            await asyncio.wait_for(service.authenticate("alice"), timeout=5)
        timeouts = [
            e for e in service.audit.recent() if e.event_type == AuditEventType.AUTH_TIMEOUT.value
        ]
        assert len(timeouts) == 1

    @pytest.mark.asyncio
    async def test_shutdown_raises_cancelled(self, lock_service: LockService, registered_user):
        waiter = asyncio.create_task(lock_service.authenticate("alice"))
        for _ in range(50):
            if lock_service.coordinator.pending("alice") is not None:
                break
            await asyncio.sleep(0)
        await lock_service.coordinator.shutdown()
        with pytest.raises(ChallengeCancelledError):
            await asyncio.wait_for(waiter, timeout=5)
