from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taskkeeper.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialRecordStore(Protocol):
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class CredentialStore:
    """One-way password hashing with argon2id.

    Neither plaintext nor digest ever leaves this class through a return value
    other than ``hash``; callers only learn whether a password matched.
    """

    def __init__(self, store: CredentialRecordStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify(self, password: str, digest: str, algo: str = PASSWORD_ALGO) -> bool:
        """Return True only for a matching password; any failure reads as a mismatch."""
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_unusable")
            return False

    def set_password(self, user_id: str, password: str) -> None:
        digest, algo = self.hash(password)
        self.store.save_password(user_id, digest, algo)

    def check_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        digest, algo = record
        matched = self.verify(password, digest, algo)
        if not matched:
            logger.info("password_verification_failed", user_id=user_id)
        return matched
