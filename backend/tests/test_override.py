"""Tests for OverrideGate: the emergency bypass."""

from __future__ import annotations

import pytest

from app.models.lock import AuditEventType, SessionState
from app.services.errors import InvalidOverrideError, NotRegisteredError, OverrideDisabledError
from app.services.override import OverrideGate

SECRET = "break-glass-secret"


def _overrides(service):
    return [
        e for e in service.audit.recent(limit=100) if e.event_type == AuditEventType.OVERRIDE.value
    ]


@pytest.fixture()
def enabled_service(make_service):
    return make_service(override_enabled=True, override_secret=SECRET)


class TestDisabled:
    @pytest.mark.asyncio
    async def test_disabled_changes_nothing(self, lock_service, registered_user):
        row = lock_service.sessions.open_session(registered_user, SessionState.LOCKED)
        with pytest.raises(OverrideDisabledError):
            await lock_service.override.attempt_override("alice", "anything")
        assert lock_service.sessions.active_session(registered_user).id == row.id
        assert lock_service.policy.state_for("alice") is SessionState.LOCKED
        assert _overrides(lock_service) == []

    def test_enabled_without_secret_stays_disabled(self, lock_service):
        gate = OverrideGate(
            lock_service.credentials,
            lock_service.sessions,
            lock_service.audit,
            enabled=True,
            secret="",
        )
        assert gate.enabled is False


class TestEnabled:
    @pytest.mark.asyncio
    async def test_valid_secret_grants_override(self, enabled_service, registered_user):
        session = await enabled_service.override.attempt_override(
            "alice", SECRET, ip_address="10.1.1.1"
        )
        assert session.session_state is SessionState.OVERRIDE
        assert session.token is not None
        assert enabled_service.is_allowed("alice", "purge") is True

        events = _overrides(enabled_service)
        assert len(events) == 1
        assert events[0].success is True
        assert events[0].ip_address == "10.1.1.1"
        assert events[0].device_info

    @pytest.mark.asyncio
    async def test_invalid_secret_rejected_and_audited(self, enabled_service, registered_user):
        with pytest.raises(InvalidOverrideError):
            await enabled_service.override.attempt_override("alice", "guess")
        assert enabled_service.is_allowed("alice", "purge") is False
        events = _overrides(enabled_service)
        assert [e.success for e in events] == [False]

    @pytest.mark.asyncio
    async def test_override_replaces_active_session(self, enabled_service, registered_user):
        unlocked = enabled_service.sessions.open_session(registered_user, SessionState.UNLOCKED)
        granted = await enabled_service.override.attempt_override("alice", SECRET)
        assert granted.id != unlocked.id
        assert granted.token != unlocked.token
        assert enabled_service.sessions.get(unlocked.id).end_time is not None

    @pytest.mark.asyncio
    async def test_unregistered_user(self, enabled_service):
        with pytest.raises(NotRegisteredError):
            await enabled_service.override.attempt_override("nobody", SECRET)
        assert _overrides(enabled_service) == []
