from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from consoleauth.config import get_settings, reset_settings_cache
from consoleauth.logging import get_logger
from consoleauth.service.admin_accounts import AdminAccountManager
from consoleauth.service.backup_codes import BackupCodeVault
from consoleauth.service.codec import ObfuscationCodec
from consoleauth.service.credentials import CredentialVerifier
from consoleauth.service.lockout import MFALockout
from consoleauth.service.login_flow import LoginStateMachine
from consoleauth.service.mfa import MFALifecycle
from consoleauth.service.password_policy import PasswordPolicy
from consoleauth.service.sessions import SessionIssuer
from consoleauth.service.totp import TOTPEngine
from consoleauth.storage.memory import MemoryStore
from consoleauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.secret_key,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a pytest event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, rate limits and MFA lockouts; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits, lockouts "
                    "and rotation tickets are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.codec = ObfuscationCodec(self.settings.obfuscation_key)
        self.totp = TOTPEngine(issuer=self.settings.totp_issuer)
        self.policy = PasswordPolicy()
        self.verifier = CredentialVerifier(self.store)
        self.vault = BackupCodeVault(
            self.store, self.totp, count=self.settings.backup_code_count
        )
        self.lockout = MFALockout(
            self.cache,
            max_attempts=self.settings.mfa_max_attempts,
            window_seconds=self.settings.mfa_lockout_seconds,
            lockout_seconds=self.settings.mfa_lockout_seconds,
        )
        self.sessions = SessionIssuer(
            self.store,
            self.cache,
            ttl_minutes=self.settings.session_ttl_minutes,
            rotation_ticket_ttl_seconds=self.settings.rotation_ticket_ttl_seconds,
        )
        self.mfa = MFALifecycle(
            self.store, self.totp, self.vault, self.verifier, self.sessions, self.lockout
        )
        self.login = LoginStateMachine(
            self.store,
            self.codec,
            self.verifier,
            self.mfa,
            self.sessions,
            self.policy,
            secret_code=self.settings.login_secret_code,
        )
        self.admins = AdminAccountManager(self.store, self.verifier, self.policy)
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            secret_code_required=bool(self.settings.login_secret_code),
            session_ttl_minutes=self.settings.session_ttl_minutes,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check keeps creation to a single thread.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token bucket rate limit, enforced even when Redis is unavailable.

    Returns a bool, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set. A non-positive ``limit`` disables the check.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
