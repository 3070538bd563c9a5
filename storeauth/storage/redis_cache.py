from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


def _to_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def _from_ms(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    value = int(float(raw))
    if value <= 0:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class RedisCache:
    """Shared counters and single-use markers for multi-worker deployments."""

    # Atomic failure counter with lock trigger. Failures recorded while the lock
    # is active leave both the counter and the lock untouched. An elapsed lock
    # keeps its counter, so the next failure locks again. Returns
    # {attempts, locked_until, triggered}.
    _LOGIN_FAILURE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local threshold = tonumber(ARGV[2])
local lock_ms = tonumber(ARGV[3])

local locked_until = tonumber(redis.call('HGET', key, 'locked_until') or '0')
if locked_until > now then
  local attempts = tonumber(redis.call('HGET', key, 'attempts') or '0')
  return {attempts, locked_until, 0}
end

local attempts = redis.call('HINCRBY', key, 'attempts', 1)
local triggered = 0
if attempts >= threshold then
  locked_until = now + lock_ms
  triggered = 1
else
  locked_until = 0
end
redis.call('HSET', key, 'last_failure', now, 'locked_until', locked_until)
return {attempts, locked_until, triggered}
"""

    # Clear an elapsed lock without touching the counter
    _EXPIRE_LOCK_SCRIPT = """
local locked_until = tonumber(redis.call('HGET', KEYS[1], 'locked_until') or '0')
if locked_until > 0 and locked_until <= tonumber(ARGV[1]) then
  redis.call('HSET', KEYS[1], 'locked_until', 0)
  return 1
end
return 0
"""

    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        # An injected client must be created with decode_responses=True
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)
        self._expire_lock = self.client.register_script(self._EXPIRE_LOCK_SCRIPT)
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # account lockout
    @staticmethod
    def _lockout_key(user_id: str) -> str:
        return f"auth:lockout:{user_id}"

    async def record_login_failure(
        self, user_id: str, *, now: datetime, threshold: int, lock_seconds: int
    ) -> tuple[int, Optional[datetime], bool]:
        """Count one failed login.

        Returns ``(attempts, locked_until, triggered)``; ``triggered`` is True
        only for the failure that started the lock.
        """
        attempts, locked_until, triggered = await self._login_failure(
            keys=[self._lockout_key(user_id)],
            args=[_to_ms(now), threshold, lock_seconds * 1000],
        )
        return int(attempts), _from_ms(str(locked_until)), bool(int(triggered))

    async def expire_lockout(self, user_id: str, *, now: datetime) -> bool:
        """Drop a lock that has run out; True when one was cleared."""
        cleared = await self._expire_lock(keys=[self._lockout_key(user_id)], args=[_to_ms(now)])
        return bool(int(cleared))

    async def get_lockout(
        self, user_id: str
    ) -> tuple[int, Optional[datetime], Optional[datetime]]:
        """Return ``(attempts, locked_until, last_failure_at)``."""
        raw = await self.client.hgetall(self._lockout_key(user_id))
        return (
            int(raw.get("attempts") or 0),
            _from_ms(raw.get("locked_until")),
            _from_ms(raw.get("last_failure")),
        )

    async def clear_lockout(self, user_id: str) -> None:
        await self.client.delete(self._lockout_key(user_id))

    # refresh tokens
    async def claim_refresh_token(self, token_hash: str, ttl_seconds: int) -> bool:
        """Mark a refresh token as spent; only the first caller gets True."""
        claimed = await self.client.set(
            f"auth:refresh:spent:{token_hash}", "1", nx=True, ex=max(1, ttl_seconds)
        )
        return bool(claimed)

    # two-factor attempts
    async def check_mfa_lockout(self, user_id: str) -> bool:
        return bool(await self.client.exists(f"auth:2fa:lockout:{user_id}"))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Atomically record a failed 2FA code and trigger a lockout at the limit.

        Returns:
            Tuple of (is_now_locked_out, current_attempts); attempts is -1 when
            the user was already locked out.
        """
        result = await self._mfa_attempt(
            keys=[f"auth:2fa:lockout:{user_id}", f"auth:2fa:attempts:{user_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return bool(int(result[0])), int(result[1])

    async def clear_mfa_attempts(self, user_id: str) -> None:
        await self.client.delete(f"auth:2fa:attempts:{user_id}")
