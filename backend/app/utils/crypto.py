"""Low-level cryptographic primitives for BioLock.

Pure functions with no domain knowledge; reusable building blocks.
"""

from __future__ import annotations

import hmac
import os

from argon2 import PasswordHasher
from argon2.exceptions import VerificationError, VerifyMismatchError


def make_password_hasher(
    time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 1
) -> PasswordHasher:
    """Build an Argon2id hasher.

    Defaults match OWASP recommendations for Argon2id:
    time_cost=3, memory_cost=64 MiB, parallelism=1.
    """
    return PasswordHasher(
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
    )


def hash_passphrase(hasher: PasswordHasher, passphrase: str) -> str:
    """Hash a passphrase. Returns the PHC-formatted Argon2id string."""
    return hasher.hash(passphrase)


def verify_passphrase(hasher: PasswordHasher, passphrase: str, digest: str) -> bool:
    """Check a passphrase against a stored digest.

    argon2-cffi compares in constant time. A mismatch returns False;
    a digest that is not a valid Argon2 hash raises InvalidHashError so the
    caller can tell corruption apart from a wrong passphrase.
    """
    try:
        return hasher.verify(digest, passphrase)
    except (VerifyMismatchError, VerificationError):
        return False


def generate_session_token() -> str:
    """Generate an opaque 256-bit capability token (64 hex chars)."""
    return os.urandom(32).hex()


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking the position of the first mismatch."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
