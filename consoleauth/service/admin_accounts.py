from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from consoleauth.logging import email_digest, get_logger
from consoleauth.service.credentials import CredentialVerifier
from consoleauth.service.errors import ConflictError, NotFoundError
from consoleauth.service.password_policy import PasswordPolicy
from consoleauth.storage.memory import MemoryStore
from consoleauth.storage.models import User

logger = get_logger(__name__)


@dataclass
class AdminAccount:
    user: User
    two_factor_enabled: bool


class AdminAccountManager:
    """Account-security operations a super administrator performs on others.

    Every reset leaves the account with a temporary password and a forced
    rotation, and every blocking or resetting operation ends the target's
    sessions.
    """

    def __init__(
        self,
        store: MemoryStore,
        verifier: Optional[CredentialVerifier] = None,
        policy: Optional[PasswordPolicy] = None,
    ) -> None:
        self.store = store
        self.verifier = verifier or CredentialVerifier(store)
        self.policy = policy or PasswordPolicy()

    def _require(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("admin not found", detail={"user_id": user_id})
        return user

    def _temporary_password(self, password: Optional[str]) -> str:
        if password:
            self.policy.check(password)
            return password
        return self.policy.generate_temporary_password()

    def list_admins(self, limit: int = 100) -> List[AdminAccount]:
        accounts = []
        for user in self.store.list_users(limit=limit):
            cfg = self.store.get_user_mfa_secret(user.id)
            accounts.append(AdminAccount(user=user, two_factor_enabled=bool(cfg and cfg.enabled)))
        return accounts

    def create_admin(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        role: str = "admin",
        password: Optional[str] = None,
    ) -> tuple[User, str]:
        """Create an account that must rotate its password at first login."""
        temporary = self._temporary_password(password)
        user = self.store.create_user(
            email, username, role=role, must_change_password=True
        )
        pwd_hash, algo = self.verifier.hash_password(temporary)
        self.store.save_password(user.id, pwd_hash, algo)
        logger.info("admin_created", user_id=user.id, email_hash=email_digest(email), role=role)
        return user, temporary

    def set_blocked(self, user_id: str, blocked: bool, *, actor_id: Optional[str] = None) -> User:
        if blocked and actor_id == user_id:
            raise ConflictError("cannot block your own account")
        self._require(user_id)
        with self.store.identity_lock(user_id):
            user = self.store.set_user_active(user_id, not blocked)
        revoked = self.store.revoke_user_sessions(user_id) if blocked else 0
        logger.info(
            "admin_blocked" if blocked else "admin_unblocked",
            user_id=user_id,
            actor_id=actor_id,
            sessions_revoked=revoked,
        )
        return user

    def reset_password(
        self,
        user_id: str,
        *,
        password: Optional[str] = None,
        unblock: bool = False,
        reset_mfa: bool = False,
    ) -> str:
        """Install a temporary password, force rotation and end all sessions."""
        self._require(user_id)
        temporary = self._temporary_password(password)
        pwd_hash, algo = self.verifier.hash_password(temporary)
        with self.store.identity_lock(user_id):
            self.store.save_password(user_id, pwd_hash, algo)
            self.store.set_must_change_password(user_id, True)
            if unblock:
                self.store.set_user_active(user_id, True)
            if reset_mfa:
                self.store.clear_user_mfa(user_id)
        revoked = self.store.revoke_user_sessions(user_id)
        logger.info(
            "admin_password_reset",
            user_id=user_id,
            unblocked=unblock,
            mfa_reset=reset_mfa,
            sessions_revoked=revoked,
        )
        return temporary

    def reset_mfa(self, user_id: str) -> bool:
        """Drop the TOTP secret and backup codes; the account re-enrolls from scratch."""
        self._require(user_id)
        with self.store.identity_lock(user_id):
            removed = self.store.clear_user_mfa(user_id)
        revoked = self.store.revoke_user_sessions(user_id)
        logger.info("admin_mfa_reset", user_id=user_id, removed=removed, sessions_revoked=revoked)
        return removed
