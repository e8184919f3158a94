"""Exception taxonomy for the BioLock services.

Authentication failures are expected control flow: command handlers turn
them into user-facing denial messages. StorageError is the only one that
signals an infrastructure fault.
"""

from __future__ import annotations


class LockError(Exception):
    """Base class for every BioLock failure."""


class NotRegisteredError(LockError):
    """The user has no BioLock profile yet."""


class AlreadyRegisteredError(LockError):
    """A profile already exists for this external id."""


class AlreadyPendingError(LockError):
    """A challenge (or registration) is already in flight for this user."""


class NotFoundError(LockError):
    """A user or session row does not exist."""


class UserNotFoundError(NotFoundError):
    pass


class SessionNotFoundError(NotFoundError):
    pass


class NoActiveSessionError(NotFoundError):
    """The user has no open session to act on."""


class ChallengeInProgressError(LockError):
    """Finish or cancel the current challenge first."""


class InvalidOverrideError(LockError):
    """The supplied override secret did not match."""


class OverrideDisabledError(LockError):
    """Emergency override is turned off by configuration."""


class LockoutError(LockError):
    """The challenge exhausted its permitted attempts."""


class ChallengeTimeoutError(LockError, TimeoutError):
    """No reply arrived on the out-of-band channel in time."""


class ChallengeCancelledError(LockError):
    """The challenge was abandoned (shutdown or undeliverable prompt)."""


class StorageError(LockError):
    """The backing store could not be read or written."""


class ChannelError(LockError):
    """A message could not be delivered on the out-of-band channel."""
