from __future__ import annotations

import re
import secrets
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from consoleauth.logging import get_logger
from consoleauth.service.errors import ConflictError, InvalidMFACode
from consoleauth.service.totp import TOTPEngine
from consoleauth.storage.memory import MemoryStore

logger = get_logger(__name__)

DEFAULT_BACKUP_CODE_COUNT = 10
CODE_BYTES = 5  # 10 hex chars, shown as xxxxx-xxxxx
MASKED_CODE = "*****-*****"

_SEPARATORS = re.compile(r"[\s\-_]")
_NORMALIZED_RE = re.compile(r"^[0-9a-f]{%d}$" % (CODE_BYTES * 2))


def normalize_code(code: str) -> str:
    return _SEPARATORS.sub("", code or "").lower()


def looks_like_backup_code(value: Optional[str]) -> bool:
    return bool(value) and bool(_NORMALIZED_RE.match(normalize_code(value)))


def _format_code(raw: str) -> str:
    half = len(raw) // 2
    return f"{raw[:half]}-{raw[half:]}"


class BackupCodeVault:
    """Single-use recovery codes, stored only as salted argon2id hashes."""

    def __init__(
        self,
        store: MemoryStore,
        totp: TOTPEngine,
        *,
        count: int = DEFAULT_BACKUP_CODE_COUNT,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.totp = totp
        self.count = count
        # Codes are random, so a lighter cost than passwords is enough
        self._hasher = hasher or PasswordHasher(
            type=Type.ID, time_cost=2, memory_cost=19456, parallelism=1
        )

    def generate(self) -> Tuple[List[str], List[str]]:
        """Return (plaintext codes, hashes) for a fresh batch without storing it."""
        codes: List[str] = []
        seen: set[str] = set()
        while len(codes) < self.count:
            raw = secrets.token_hex(CODE_BYTES)
            if raw in seen:
                continue
            seen.add(raw)
            codes.append(_format_code(raw))
        hashes = [self._hasher.hash(normalize_code(code)) for code in codes]
        return codes, hashes

    def issue(self, user_id: str) -> List[str]:
        """Replace the identity's whole batch; plaintext is returned only here."""
        codes, hashes = self.generate()
        with self.store.identity_lock(user_id):
            cfg = self.store.get_user_mfa_secret(user_id)
            if not cfg or not cfg.enabled:
                raise ConflictError("two-factor authentication is not enabled")
            self.store.replace_backup_code_hashes(user_id, hashes)
        logger.info("backup_codes_issued", user_id=user_id, count=len(codes))
        return codes

    def consume(self, user_id: str, submitted: Optional[str]) -> bool:
        if not looks_like_backup_code(submitted):
            return False
        candidate = normalize_code(submitted)
        for stored_hash in self.store.get_backup_code_hashes(user_id):
            try:
                self._hasher.verify(stored_hash, candidate)
            except (VerificationError, InvalidHash):
                continue
            # Only the request that actually removes the hash wins
            if self.store.consume_backup_code_hash(user_id, stored_hash):
                logger.info(
                    "backup_code_consumed",
                    user_id=user_id,
                    remaining=self.remaining(user_id),
                )
                return True
            return False
        return False

    def remaining(self, user_id: str) -> int:
        return len(self.store.get_backup_code_hashes(user_id))

    def regenerate(self, user_id: str, totp_code: Optional[str]) -> List[str]:
        """Invalidate every existing code and issue a new batch.

        Only a live TOTP code authorizes this; a backup code does not.
        """
        cfg = self.store.get_user_mfa_secret(user_id)
        if not cfg or not cfg.enabled:
            raise ConflictError("two-factor authentication is not enabled")
        if not self.totp.verify(cfg.secret, totp_code):
            raise InvalidMFACode()
        return self.issue(user_id)

    def masked(self, user_id: str) -> List[str]:
        return [MASKED_CODE] * self.remaining(user_id)
