from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.logging import get_logger

logger = get_logger(__name__)


class PasswordVerifier:
    """argon2id hashing with a fixed dummy hash for unknown accounts.

    ``verify_dummy`` runs a full verification against a throwaway hash so a
    login for an unknown user costs the same as one with a wrong password.
    """

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._hasher.hash("authgate-dummy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def verify_dummy(self, password: str) -> None:
        self.verify(self._dummy_hash, password)
