from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for sessions, rate limits, MFA lockouts and rotation tickets."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # KEYS: lockout, attempts. ARGV: max_attempts, window_seconds, lockout_seconds
    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
    redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    _POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)
        self._pop = self.client.register_script(self._POP_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate limit subjects so user-controlled text cannot collide keys."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _ticket_key(ticket: str) -> str:
        return f"auth:rotation:{hashlib.sha256(ticket.encode()).hexdigest()}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket rate limit evaluated atomically in Lua."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def check_mfa_lockout(self, user_id: str) -> bool:
        return bool(await self.client.exists(f"mfa:lockout:{user_id}"))

    async def atomic_mfa_attempt(
        self,
        user_id: str,
        max_attempts: int = 5,
        window_seconds: int = 300,
        lockout_seconds: int = 300,
    ) -> tuple[bool, int]:
        """Record a failed second factor and trigger the lockout in one round trip.

        Returns:
            (locked_out, attempts). attempts is -1 when the identity was
            already locked before this call.
        """
        result = await self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, window_seconds, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{user_id}")

    async def release_mfa_lockout(self, user_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{user_id}", f"mfa:lockout:{user_id}")

    async def set_rotation_ticket(self, ticket: str, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(self._ticket_key(ticket), user_id, ex=max(1, ttl_seconds))

    async def pop_rotation_ticket(self, ticket: str) -> Optional[str]:
        """Get and delete a rotation ticket so it can be redeemed once."""
        return await self._pop(keys=[self._ticket_key(ticket)])

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, while exposing the same awaitable interface as RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)
        self._mfa_attempt = self.client.register_script(RedisCache._MFA_ATTEMPT_SCRIPT)
        self._pop = self.client.register_script(RedisCache._POP_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def check_mfa_lockout(self, user_id: str) -> bool:
        return bool(self.client.exists(f"mfa:lockout:{user_id}"))

    async def atomic_mfa_attempt(
        self,
        user_id: str,
        max_attempts: int = 5,
        window_seconds: int = 300,
        lockout_seconds: int = 300,
    ) -> tuple[bool, int]:
        result = self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, window_seconds, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        self.client.delete(f"mfa:attempts:{user_id}")

    async def release_mfa_lockout(self, user_id: str) -> None:
        self.client.delete(f"mfa:attempts:{user_id}", f"mfa:lockout:{user_id}")

    async def set_rotation_ticket(self, ticket: str, user_id: str, ttl_seconds: int) -> None:
        self.client.set(RedisCache._ticket_key(ticket), user_id, ex=max(1, ttl_seconds))

    async def pop_rotation_ticket(self, ticket: str) -> Optional[str]:
        return self._pop(keys=[RedisCache._ticket_key(ticket)])

    async def close(self) -> None:
        self.client.close()
