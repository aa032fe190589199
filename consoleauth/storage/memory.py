from __future__ import annotations

import base64
import contextlib
import hashlib
import json
import os
import secrets
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken

from consoleauth.logging import get_logger
from consoleauth.storage.errors import ConstraintViolation
from consoleauth.storage.models import ADMIN_ROLES, Session, User, UserMFAConfig


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-process identity store persisted as JSON under ``fs_root``.

    All reads and writes go through ``_data_lock``. Callers that need a
    read-verify-write sequence on one identity hold ``identity_lock`` for the
    duration, which stands in for a row lock.
    """

    def __init__(
        self, fs_root: str = "/tmp/consoleauth", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.mfa_secrets: Dict[str, UserMFAConfig] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self._identity_locks: Dict[str, threading.RLock] = {}
        self._identity_locks_guard = threading.Lock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("SECRET_KEY")
        if not material:
            secret_path = self.fs_root / ".secret_key"
            try:
                if secret_path.exists():
                    material = secret_path.read_text().strip()
            except OSError as exc:
                self.logger.warning("mfa_key_read_failed", error=str(exc))
            if not material:
                generated = secrets.token_urlsafe(64)
                try:
                    secret_path.write_text(generated)
                    os.chmod(secret_path, 0o600)
                    material = generated
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        try:
            return Fernet(self._derive_cipher_key(material))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        with self._data_lock:
            self._state_path().stat()

    @contextlib.contextmanager
    def identity_lock(self, user_id: str) -> Iterator[None]:
        """Serialize state-changing operations on a single identity."""
        with self._identity_locks_guard:
            lock = self._identity_locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._identity_locks[user_id] = lock
        with lock:
            yield

    # identities
    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        role: str = "admin",
        is_active: bool = True,
        must_change_password: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        if role not in ADMIN_ROLES:
            raise ConstraintViolation("unknown role", {"field": "role", "role": role})
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                username=username or normalized.split("@", 1)[0],
                role=role,
                is_active=is_active,
                must_change_password=must_change_password,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def update_username(self, user_id: str, username: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.username = username
            self._persist_state()
            return user

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if role not in ADMIN_ROLES:
            raise ConstraintViolation("unknown role", {"field": "role", "role": role})
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def set_must_change_password(self, user_id: str, required: bool) -> None:
        with self._data_lock:
            self._require_user(user_id).must_change_password = required
            self._persist_state()

    def record_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = datetime.utcnow()
            self._persist_state()

    # credentials
    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        clear_must_change: bool = False,
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            self.credentials[user_id] = (password_hash, password_algo)
            if clear_must_change:
                user.must_change_password = False
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # mfa
    def _encrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored MFA secret cannot be decrypted") from exc

    def _public_mfa_config(self, cfg: UserMFAConfig) -> UserMFAConfig:
        return UserMFAConfig(
            user_id=cfg.user_id,
            secret=self._decrypt_mfa_secret(cfg.secret),
            enabled=cfg.enabled,
            created_at=cfg.created_at,
            confirmed_at=cfg.confirmed_at,
            backup_code_hashes=list(cfg.backup_code_hashes),
            meta=cfg.meta,
        )

    def set_user_mfa_secret(self, user_id: str, secret: str) -> UserMFAConfig:
        """Store a pending (not yet enabled) secret, replacing any earlier one."""
        with self._data_lock:
            self._require_user(user_id)
            existing = self.mfa_secrets.get(user_id)
            if existing and existing.enabled:
                raise ConstraintViolation("mfa already enabled", {"user_id": user_id})
            record = UserMFAConfig(
                user_id=user_id, secret=self._encrypt_mfa_secret(secret), enabled=False
            )
            self.mfa_secrets[user_id] = record
            self._persist_state()
            return self._public_mfa_config(record)

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._data_lock:
            cfg = self.mfa_secrets.get(user_id)
            if not cfg:
                return None
            return self._public_mfa_config(cfg)

    def enable_user_mfa(
        self, user_id: str, backup_code_hashes: Sequence[str]
    ) -> UserMFAConfig:
        """Flip a pending secret to enabled together with its first backup codes."""
        if not backup_code_hashes:
            raise ConstraintViolation("backup codes required", {"user_id": user_id})
        with self._data_lock:
            cfg = self.mfa_secrets.get(user_id)
            if not cfg or not cfg.secret:
                raise ConstraintViolation("no pending mfa secret", {"user_id": user_id})
            cfg.enabled = True
            cfg.confirmed_at = datetime.utcnow()
            cfg.backup_code_hashes = list(backup_code_hashes)
            self._persist_state()
            return self._public_mfa_config(cfg)

    def clear_user_mfa(self, user_id: str) -> bool:
        """Erase secret and backup codes in one step."""
        with self._data_lock:
            removed = self.mfa_secrets.pop(user_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def replace_backup_code_hashes(
        self, user_id: str, backup_code_hashes: Sequence[str]
    ) -> None:
        if not backup_code_hashes:
            raise ConstraintViolation("backup codes required", {"user_id": user_id})
        with self._data_lock:
            cfg = self.mfa_secrets.get(user_id)
            if not cfg or not cfg.enabled:
                raise ConstraintViolation("mfa not enabled", {"user_id": user_id})
            cfg.backup_code_hashes = list(backup_code_hashes)
            self._persist_state()

    def get_backup_code_hashes(self, user_id: str) -> List[str]:
        with self._data_lock:
            cfg = self.mfa_secrets.get(user_id)
            return list(cfg.backup_code_hashes) if cfg else []

    def consume_backup_code_hash(self, user_id: str, code_hash: str) -> bool:
        """Atomically remove ``code_hash``; only the first caller gets True."""
        with self._data_lock:
            cfg = self.mfa_secrets.get(user_id)
            if not cfg or not cfg.enabled or code_hash not in cfg.backup_code_hashes:
                return False
            cfg.backup_code_hashes.remove(code_hash)
            self._persist_state()
            return True

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 8 * 60,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            self._require_user(user_id)
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None):
                self._persist_state()

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        now = datetime.utcnow()
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [
                self._serialize_session(s)
                for s in self.sessions.values()
                if not s.is_expired(now)
            ],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "mfa_secrets": [
                self._serialize_mfa_config(cfg) for cfg in self.mfa_secrets.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist identity state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.mfa_secrets = {
            cfg["user_id"]: self._deserialize_mfa_config(cfg)
            for cfg in data.get("mfa_secrets", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "must_change_password": user.must_change_password,
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data.get("username") or data["email"].split("@", 1)[0],
            role=data.get("role", "admin"),
            created_at=self._deserialize_datetime(data["created_at"]),
            is_active=data.get("is_active", True),
            must_change_password=data.get("must_change_password", False),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            meta=data.get("meta"),
        )

    def _serialize_mfa_config(self, cfg: UserMFAConfig) -> dict:
        return {
            "user_id": cfg.user_id,
            "secret": cfg.secret,
            "enabled": cfg.enabled,
            "created_at": self._serialize_datetime(cfg.created_at),
            "confirmed_at": self._serialize_datetime(cfg.confirmed_at),
            "backup_code_hashes": list(cfg.backup_code_hashes),
            "meta": cfg.meta,
        }

    def _deserialize_mfa_config(self, data: dict) -> UserMFAConfig:
        return UserMFAConfig(
            user_id=data["user_id"],
            secret=data["secret"],
            enabled=bool(data.get("enabled", False)),
            created_at=self._deserialize_datetime(
                data.get("created_at") or datetime.utcnow().isoformat()
            ),
            confirmed_at=self._deserialize_datetime(data.get("confirmed_at")),
            backup_code_hashes=list(data.get("backup_code_hashes", [])),
            meta=data.get("meta"),
        )
