from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

ADMIN_ROLES = ("admin", "super_admin")


@dataclass
class User:
    id: str
    email: str
    username: str
    role: str = "admin"
    created_at: datetime = field(default_factory=datetime.utcnow)
    is_active: bool = True
    must_change_password: bool = False
    last_login_at: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def is_blocked(self) -> bool:
        return not self.is_active


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 8 * 60,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = datetime.utcnow()
        return cls(
            # Opaque bearer capability; the binding to user and issue time stays server-side
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or datetime.utcnow())


@dataclass
class UserMFAConfig:
    user_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    confirmed_at: Optional[datetime] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    meta: Dict | None = None
