from __future__ import annotations

import hashlib

import redis.asyncio as aioredis

# KEYS[1] lockout marker, KEYS[2] failure counter; ARGV[1] threshold, ARGV[2] lock seconds.
# Returns {locked, failures}; failures is -1 when the marker was already set.
_RECORD_MFA_FAILURE = """
local marker, counter = KEYS[1], KEYS[2]
local threshold, lock_seconds = tonumber(ARGV[1]), tonumber(ARGV[2])

if redis.call('EXISTS', marker) == 1 then
    return {1, -1}
end

local failures = redis.call('INCR', counter)
if failures == 1 then
    redis.call('EXPIRE', counter, lock_seconds)
end
if failures < threshold then
    return {0, failures}
end

redis.call('SET', marker, '1', 'EX', lock_seconds)
redis.call('DEL', counter)
return {1, failures}
"""


class RedisCache:
    """Shared MFA failure counters, so every worker sees the same attempt budget."""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        key_prefix: str = "pivotauth",
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Ping once at startup with a throwaway sync client."""
        from redis import Redis

        ping_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            ping_client.ping()
        finally:
            ping_client.close()

    def _key(self, kind: str, subject: str) -> str:
        # subjects embed role and account id; hashing keeps ':' out of the key layout
        digest = hashlib.sha256(subject.encode()).hexdigest()[:32]
        return f"{self.key_prefix}:mfa:{kind}:{digest}"

    async def check_mfa_lockout(self, subject: str) -> int:
        """Seconds until ``subject`` may try codes again; 0 when it is not locked."""
        ttl = await self.client.ttl(self._key("lockout", subject))
        remaining = int(ttl) if ttl is not None else -2
        # negative ttl means no marker (-2) or no expiry (-1)
        return max(1, remaining) if remaining >= 0 else 0

    async def atomic_mfa_attempt(
        self, subject: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Count one failed code for ``subject`` in a single round trip.

        Returns ``(locked, failures)``. Reaching ``max_attempts`` sets the
        lockout marker; a subject that was already locked reports ``-1``.
        """
        locked, failures = await self.client.eval(
            _RECORD_MFA_FAILURE,
            2,
            self._key("lockout", subject),
            self._key("attempts", subject),
            max_attempts,
            lockout_seconds,
        )
        return bool(int(locked)), int(failures)

    async def clear_mfa_attempts(self, subject: str) -> None:
        await self.client.delete(self._key("attempts", subject))

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisCache"]
