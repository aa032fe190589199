from __future__ import annotations

from typing import List, Optional

from consoleauth.logging import get_logger
from consoleauth.service.backup_codes import BackupCodeVault, looks_like_backup_code
from consoleauth.service.credentials import CredentialVerifier
from consoleauth.service.errors import (
    ConflictError,
    InvalidCredentials,
    InvalidMFACode,
    NotFoundError,
)
from consoleauth.service.lockout import MFALockout
from consoleauth.service.sessions import SessionIssuer
from consoleauth.service.totp import TOTPEngine, is_totp_code
from consoleauth.storage.memory import MemoryStore

logger = get_logger(__name__)


class MFALifecycle:
    """Enrollment, confirmation, disablement and backup codes for one identity.

    An enabled configuration always has a secret and at least one backup code;
    enable and disable each change both in a single store call under the
    identity lock.
    """

    def __init__(
        self,
        store: MemoryStore,
        totp: TOTPEngine,
        vault: BackupCodeVault,
        verifier: CredentialVerifier,
        sessions: SessionIssuer,
        lockout: MFALockout,
    ) -> None:
        self.store = store
        self.totp = totp
        self.vault = vault
        self.verifier = verifier
        self.sessions = sessions
        self.lockout = lockout

    async def _guard_locked(self, user_id: str) -> None:
        if await self.lockout.is_locked(user_id):
            raise InvalidMFACode(detail={"locked": True})

    async def _fail(self, user_id: str) -> None:
        locked = await self.lockout.record_failure(user_id)
        raise InvalidMFACode(detail={"locked": True} if locked else None)

    async def verify_second_factor(self, user_id: str, code: Optional[str]) -> str:
        """Accept a TOTP or an unused backup code, counting failures toward lockout.

        Returns which factor matched, ``"totp"`` or ``"backup_code"``.
        """
        await self._guard_locked(user_id)
        cfg = self.store.get_user_mfa_secret(user_id)
        method = None
        if cfg and cfg.enabled:
            if is_totp_code(code):
                if self.totp.verify(cfg.secret, code):
                    method = "totp"
            elif looks_like_backup_code(code) and self.vault.consume(user_id, code):
                method = "backup_code"
        if method is None:
            logger.info("second_factor_rejected", user_id=user_id)
            await self._fail(user_id)
        await self.lockout.clear(user_id)
        return method

    def start_enrollment(self, user_id: str, custom_secret: Optional[str] = None) -> dict:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("identity not found")
        secret = (
            self.totp.normalize_secret(custom_secret)
            if custom_secret
            else self.totp.generate_secret()
        )
        with self.store.identity_lock(user_id):
            cfg = self.store.get_user_mfa_secret(user_id)
            if cfg and cfg.enabled:
                raise ConflictError("two-factor authentication is already enabled")
            self.store.set_user_mfa_secret(user_id, secret)
        uri = self.totp.provisioning_uri(secret, user.email)
        logger.info("mfa_enrollment_started", user_id=user_id, custom_secret=bool(custom_secret))
        return {
            "provisioning_uri": uri,
            "secret": secret,
            "qr_code": self.totp.qr_code_data_uri(uri),
        }

    async def confirm_enrollment(self, user_id: str, code: Optional[str]) -> List[str]:
        await self._guard_locked(user_id)
        cfg = self.store.get_user_mfa_secret(user_id)
        if not cfg:
            raise ConflictError("no two-factor enrollment in progress")
        if cfg.enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if not self.totp.verify(cfg.secret, code):
            logger.info("mfa_enrollment_code_rejected", user_id=user_id)
            await self._fail(user_id)
        await self.lockout.clear(user_id)

        codes, hashes = self.vault.generate()
        with self.store.identity_lock(user_id):
            current = self.store.get_user_mfa_secret(user_id)
            # A concurrent setup may have replaced the secret we just verified
            if not current or current.enabled or current.secret != cfg.secret:
                raise ConflictError("two-factor enrollment changed, start again")
            self.store.enable_user_mfa(user_id, hashes)
        logger.info("mfa_enabled", user_id=user_id, backup_codes=len(codes))
        return codes

    async def disable(
        self,
        user_id: str,
        password: str,
        code: Optional[str],
        *,
        current_session_id: Optional[str] = None,
    ) -> None:
        cfg = self.store.get_user_mfa_secret(user_id)
        if not cfg or not cfg.enabled:
            raise ConflictError("two-factor authentication is not enabled")
        if not self.verifier.verify_password_for(user_id, password or ""):
            logger.info("mfa_disable_password_rejected", user_id=user_id)
            raise InvalidCredentials("password is incorrect")
        await self.verify_second_factor(user_id, code)
        with self.store.identity_lock(user_id):
            self.store.clear_user_mfa(user_id)
        revoked = await self.sessions.revoke_all(user_id, except_session_id=current_session_id)
        logger.info("mfa_disabled", user_id=user_id, sessions_revoked=revoked)

    async def regenerate_backup_codes(self, user_id: str, totp_code: Optional[str]) -> List[str]:
        await self._guard_locked(user_id)
        try:
            codes = self.vault.regenerate(user_id, totp_code)
        except InvalidMFACode:
            logger.info("backup_code_regeneration_rejected", user_id=user_id)
            await self._fail(user_id)
        await self.lockout.clear(user_id)
        return codes

    def backup_code_status(self, user_id: str) -> dict:
        return {
            "codes": self.vault.masked(user_id),
            "remaining": self.vault.remaining(user_id),
        }

    def status(self, user_id: str) -> dict:
        cfg = self.store.get_user_mfa_secret(user_id)
        return {
            "enabled": bool(cfg and cfg.enabled),
            "pending": bool(cfg and not cfg.enabled),
            "backup_codes_remaining": len(cfg.backup_code_hashes) if cfg and cfg.enabled else 0,
        }
