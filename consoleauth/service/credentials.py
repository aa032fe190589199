from __future__ import annotations

import secrets
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from consoleauth.logging import email_digest, get_logger
from consoleauth.service.errors import AccountBlocked, InvalidCredentials
from consoleauth.storage.memory import MemoryStore
from consoleauth.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialVerifier:
    """Check an email/password pair against the stored argon2id hash.

    Every call pays for exactly one argon2 verification, whether or not the
    email exists, so timing does not reveal which accounts are registered.
    """

    def __init__(self, store: MemoryStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _check(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (VerificationError, InvalidHash):
            return False

    def verify_password_for(self, user_id: str, password: str) -> bool:
        """Verify ``password`` for a known identity, rehashing if parameters drifted."""
        record = self.store.get_password_record(user_id)
        if not record:
            self._check(self._dummy_hash, password)
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self._check(self._dummy_hash, password)
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        if not self._check(stored_hash, password):
            return False
        self._maybe_rehash(user_id, stored_hash, password)
        return True

    def _maybe_rehash(self, user_id: str, stored_hash: str, password: str) -> None:
        try:
            needs_rehash = self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            needs_rehash = True
        if not needs_rehash:
            return
        new_hash, algo = self.hash_password(password)
        with self.store.identity_lock(user_id):
            # Skip if the password changed underneath us
            current = self.store.get_password_record(user_id)
            if current and current[0] == stored_hash:
                self.store.save_password(user_id, new_hash, algo)
                logger.info("password_rehashed", user_id=user_id)

    def verify(self, email: str, password: str) -> User:
        user = self.store.get_user_by_email(email) if email else None
        if user is None:
            self._check(self._dummy_hash, password or "")
            logger.info("login_unknown_identity", email_hash=email_digest(email or ""))
            raise InvalidCredentials()
        if not self.verify_password_for(user.id, password or ""):
            logger.info("login_password_mismatch", user_id=user.id)
            raise InvalidCredentials()
        # Checked after the hash so a blocked account costs the same as any other
        if user.is_blocked:
            logger.warning("login_blocked_identity", user_id=user.id)
            raise AccountBlocked()
        return user
