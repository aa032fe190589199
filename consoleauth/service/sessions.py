from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union

from consoleauth.logging import get_logger
from consoleauth.storage.memory import MemoryStore
from consoleauth.storage.models import Session, User
from consoleauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: Optional[str] = None


class SessionIssuer:
    """Opaque server-side sessions plus single-use password rotation tickets.

    Sessions live in the identity store. Redis, when configured, only holds
    rotation tickets so any worker can redeem one.
    """

    def __init__(
        self,
        store: MemoryStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        ttl_minutes: int = 480,
        rotation_ticket_ttl_seconds: int = 600,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_minutes = ttl_minutes
        self.rotation_ticket_ttl_seconds = rotation_ticket_ttl_seconds
        self._state_lock = threading.Lock()
        self._rotation_tickets: Dict[str, Tuple[str, datetime]] = {}

    async def issue(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        self.store.record_login(user.id)
        logger.info("session_issued", user_id=user.id, expires_at=session.expires_at.isoformat())
        return session

    async def revoke(self, session_id: str) -> None:
        self.store.revoke_session(session_id)

    async def revoke_all(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        revoked = self.store.revoke_user_sessions(user_id, except_session_id)
        logger.info("sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    async def resolve(self, session_id: Optional[str]) -> Optional[AuthContext]:
        if not session_id:
            return None
        sess = self.store.get_session(session_id)
        if not sess:
            return None
        if sess.is_expired():
            await self.revoke(session_id)
            return None
        user = self.store.get_user(sess.user_id)
        if not user or user.is_blocked or user.must_change_password:
            return None
        return AuthContext(user_id=user.id, role=user.role, session_id=sess.id)

    async def issue_rotation_ticket(self, user_id: str) -> str:
        ticket = secrets.token_urlsafe(32)
        ttl = self.rotation_ticket_ttl_seconds
        if self.cache:
            await self.cache.set_rotation_ticket(ticket, user_id, ttl)
        else:
            expires_at = datetime.utcnow() + timedelta(seconds=ttl)
            with self._state_lock:
                self._purge_expired_tickets()
                self._rotation_tickets[ticket] = (user_id, expires_at)
        logger.info("rotation_ticket_issued", user_id=user_id, ttl_seconds=ttl)
        return ticket

    async def redeem_rotation_ticket(self, ticket: Optional[str]) -> Optional[str]:
        """Return the identity bound to ``ticket`` and invalidate it."""
        if not ticket:
            return None
        if self.cache:
            user_id = await self.cache.pop_rotation_ticket(ticket)
            if isinstance(user_id, bytes):
                user_id = user_id.decode()
            return user_id or None
        with self._state_lock:
            stored = self._rotation_tickets.pop(ticket, None)
        if not stored:
            return None
        user_id, expires_at = stored
        if expires_at <= datetime.utcnow():
            return None
        return user_id

    def _purge_expired_tickets(self) -> None:
        now = datetime.utcnow()
        expired = [t for t, (_, exp) in self._rotation_tickets.items() if exp <= now]
        for ticket in expired:
            self._rotation_tickets.pop(ticket, None)
