from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from storeauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialVerifier:
    """argon2id password hashing.

    Raw passwords are only ever handed to the hasher; they are not logged,
    stored, or returned.
    """

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Hash used to spend comparable time when the account does not exist
        self._dummy_hash = self._hasher.hash("storeauth-timing-equalizer")

    @property
    def algorithm(self) -> str:
        return PASSWORD_ALGO

    def encode(self, raw_password: str) -> str:
        return self._hasher.hash(raw_password)

    def verify(self, raw_password: str, stored_hash: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, raw_password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def burn(self) -> None:
        """Run one verification against a throwaway hash."""
        self.verify("not-the-password", self._dummy_hash)
