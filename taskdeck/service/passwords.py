from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taskdeck.config import Settings
from taskdeck.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """Slow, salted, adaptive one-way hashing backed by argon2id."""

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return True when ``plaintext`` matches ``digest``; never raises on mismatch."""
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_unusable", algorithm=self.algorithm)
            return False

    def needs_rehash(self, digest: str) -> bool:
        """True when ``digest`` was produced with weaker parameters than the current ones."""
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True
