from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union

from consoleauth.logging import get_logger
from consoleauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class MFALockout:
    """Counts failed second-factor attempts per identity.

    ``max_attempts`` failures inside ``window_seconds`` lock the identity's
    second factor for ``lockout_seconds``. Redis scripts keep the
    check-and-increment atomic across workers; without Redis the counters
    live in this process behind a lock.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        max_attempts: int = 5,
        window_seconds: int = 300,
        lockout_seconds: int = 300,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self._state_lock = threading.Lock()
        self._attempts: Dict[str, Tuple[int, datetime]] = {}  # user_id -> (count, window_start)
        self._lockouts: Dict[str, datetime] = {}  # user_id -> locked_until

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def is_locked(self, user_id: str) -> bool:
        if self.cache:
            locked = await self.cache.check_mfa_lockout(user_id)
        else:
            now = self._now()
            with self._state_lock:
                locked_until = self._lockouts.get(user_id)
                locked = bool(locked_until and locked_until > now)
                if locked_until and not locked:
                    self._lockouts.pop(user_id, None)
        if locked:
            logger.warning("mfa_locked_out", user_id=user_id)
        return locked

    async def record_failure(self, user_id: str) -> bool:
        """Count one failed attempt. Returns True once the identity is locked."""
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id,
                max_attempts=self.max_attempts,
                window_seconds=self.window_seconds,
                lockout_seconds=self.lockout_seconds,
            )
            if is_locked and attempts >= 0:
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
            return is_locked

        now = self._now()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            current = self._attempts.get(user_id)
            attempts = 1
            window_start = now
            if current:
                count, prev_start = current
                if now - prev_start < timedelta(seconds=self.window_seconds):
                    attempts = count + 1
                    window_start = prev_start
            if attempts >= self.max_attempts:
                self._lockouts[user_id] = now + timedelta(seconds=self.lockout_seconds)
                self._attempts.pop(user_id, None)
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
                return True
            self._attempts[user_id] = (attempts, window_start)
            return False

    async def clear(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
            return
        with self._state_lock:
            self._attempts.pop(user_id, None)


    async def release(self, user_id: str) -> None:
        """Lift an active lock as well as the failure count."""
        if self.cache:
            await self.cache.release_mfa_lockout(user_id)
        else:
            with self._state_lock:
                self._attempts.pop(user_id, None)
                self._lockouts.pop(user_id, None)
        logger.info("mfa_lockout_released", user_id=user_id)
