"""One-way hashing for secrets (slow, salted) and for codes/refresh tokens (fast)."""

from __future__ import annotations

import hashlib
import hmac

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from turnstile.logging import get_logger

logger = get_logger(__name__)

# Single work factor for every password hash, including the bootstrap script.
# Argon2id, RFC 9106 "second recommended" profile: 3 passes over 64 MiB.
PASSWORD_TIME_COST = 3
PASSWORD_MEMORY_COST_KIB = 64 * 1024
PASSWORD_PARALLELISM = 4

PASSWORD_ALGORITHM = "argon2id"


class CredentialHasher:
    """Password hashing via argon2id and fast digests for high-entropy values."""

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=PASSWORD_TIME_COST,
            memory_cost=PASSWORD_MEMORY_COST_KIB,
            parallelism=PASSWORD_PARALLELISM,
            type=Type.ID,
        )
        # Verified against when a login names an unknown principal so both
        # paths pay the same argon2 cost.
        self._dummy_hash = self._pwd_hasher.hash("turnstile-timing-equalizer")

    def hash_password(self, plain: str) -> str:
        return self._pwd_hasher.hash(plain)

    def verify_password(self, plain: str, hashed: str | None) -> bool:
        if not hashed:
            try:
                self._pwd_hasher.verify(self._dummy_hash, plain)
            except VerificationError:
                pass
            return False
        try:
            return self._pwd_hasher.verify(hashed, plain)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, hashed: str) -> bool:
        """True when ``hashed`` was produced with different parameters."""
        try:
            return self._pwd_hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True

    @staticmethod
    def hash_fast(value: str) -> str:
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    @staticmethod
    def matches_fast(value: str, digest: str | None) -> bool:
        """Constant-time comparison of ``hash_fast(value)`` with a stored digest."""
        if not digest:
            return False
        return hmac.compare_digest(CredentialHasher.hash_fast(value), digest)
