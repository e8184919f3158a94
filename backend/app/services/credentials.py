from __future__ import annotations

import logging

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from app.models.lock import LockUser
from app.services.clock import Clock
from app.services.errors import AlreadyRegisteredError, StorageError, UserNotFoundError
from app.utils.crypto import hash_passphrase, make_password_hasher, verify_passphrase

logger = logging.getLogger(__name__)


class CredentialStore:
    """Owns BioLock user rows and their passphrase digests.

    Digests never leave this class: callers get booleans and user ids,
    never the PHC string, and nothing here logs a passphrase or digest.
    """

    def __init__(
        self, engine, clock: Clock, hasher: PasswordHasher | None = None
    ) -> None:
        self._engine = engine
        self._clock = clock
        self._hasher = hasher if hasher is not None else make_password_hasher()

    def register(
        self, external_id: str, passphrase: str, device_info: str | None = None
    ) -> str:
        """Create a profile for *external_id*. Returns the new user id."""
        if self.get_user(external_id) is not None:
            raise AlreadyRegisteredError(f"{external_id} is already registered")

        now = self._clock.now()
        user = LockUser(
            external_id=external_id,
            passphrase_digest=hash_passphrase(self._hasher, passphrase),
            device_info=device_info,
            created_at=now,
            updated_at=now,
        )
        try:
            with Session(self._engine) as db:
                db.add(user)
                db.commit()
                db.refresh(user)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration (external_id is UNIQUE)
            raise AlreadyRegisteredError(f"{external_id} is already registered") from exc
        except SQLAlchemyError as exc:
            raise StorageError("Failed to persist user") from exc

        logger.info("Registered BioLock user %s", user.id)
        return user.id

    def get_user(self, external_id: str) -> LockUser | None:
        try:
            with Session(self._engine) as db:
                return db.exec(
                    select(LockUser).where(LockUser.external_id == external_id)
                ).first()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to read user") from exc

    def require_user(self, external_id: str) -> LockUser:
        user = self.get_user(external_id)
        if user is None:
            raise UserNotFoundError(f"No BioLock profile for {external_id}")
        return user

    def verify(self, external_id: str, passphrase: str) -> bool:
        """Check *passphrase* against the stored digest in constant time."""
        user = self.require_user(external_id)
        try:
            return verify_passphrase(self._hasher, passphrase, user.passphrase_digest)
        except InvalidHashError:
            logger.warning("Stored digest for user %s is not a valid Argon2 hash", user.id)
            return False

    def touch_last_auth(self, external_id: str) -> None:
        now = self._clock.now()
        try:
            with Session(self._engine) as db:
                user = db.exec(
                    select(LockUser).where(LockUser.external_id == external_id)
                ).first()
                if user is None:
                    raise UserNotFoundError(f"No BioLock profile for {external_id}")
                user.last_auth_at = now
                user.updated_at = now
                db.add(user)
                db.commit()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to update last auth timestamp") from exc
