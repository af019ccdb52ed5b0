from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis

from profileauth.storage.models import Channel, OTPAttemptOutcome, OTPPurpose, OTPRecord


class RedisCache:
    """Redis-backed one-time code records shared across worker processes."""

    # Charge one attempt, then compare; the record is dropped once it is settled
    _OTP_ATTEMPT_SCRIPT = """
local key = KEYS[1]
local record_id = ARGV[1]
local candidate = ARGV[2]
local now = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'id', 'code_hash', 'expires_ts', 'remaining_attempts')
if data[1] == false or data[1] ~= record_id then
  return {'not_found', 0}
end

if tonumber(data[3]) <= now then
  redis.call('DEL', key)
  return {'expired', 0}
end

local remaining = redis.call('HINCRBY', key, 'remaining_attempts', -1)
if data[2] == candidate then
  redis.call('DEL', key)
  return {'verified', remaining}
end

if remaining <= 0 then
  redis.call('DEL', key)
  return {'exhausted', 0}
end
return {'mismatch', remaining}
"""

    _OTP_DISCARD_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'id')
if current == false then
  return 0
end
if ARGV[1] ~= '' and current ~= ARGV[1] then
  return 0
end
return redis.call('DEL', KEYS[1])
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._otp_attempt = self.client.register_script(self._OTP_ATTEMPT_SCRIPT)
        self._otp_discard = self.client.register_script(self._OTP_DISCARD_SCRIPT)

    @staticmethod
    def _otp_key(target: str, purpose: OTPPurpose | str) -> str:
        return f"auth:otp:{OTPPurpose(purpose).value}:{target}"

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: datetime) -> int:
        """TTL relative to ``now``; Redis rejects zero or negative values."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - now).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put_otp(self, record: OTPRecord) -> None:
        key = self._otp_key(record.target, record.purpose)
        mapping = {
            "id": record.id,
            "target": record.target,
            "purpose": record.purpose.value,
            "code_hash": record.code_hash,
            "salt": record.salt,
            "channel": record.channel.value,
            "created_at": record.created_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
            "expires_ts": record.expires_at.timestamp(),
            "remaining_attempts": record.remaining_attempts,
        }
        # DEL + HSET in one transaction so the prior code is superseded atomically
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping=mapping)
        pipe.expire(key, self._ttl_seconds(record.expires_at, record.created_at))
        await pipe.execute()

    async def get_otp(self, target: str, purpose: OTPPurpose) -> Optional[OTPRecord]:
        data = await self.client.hgetall(self._otp_key(target, purpose))
        if not data:
            return None
        return OTPRecord(
            id=data["id"],
            target=data["target"],
            purpose=OTPPurpose(data["purpose"]),
            code_hash=data["code_hash"],
            salt=data["salt"],
            channel=Channel(data["channel"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            remaining_attempts=int(data["remaining_attempts"]),
        )

    async def attempt_otp(
        self,
        target: str,
        purpose: OTPPurpose,
        *,
        record_id: str,
        candidate_hash: str,
        now: datetime,
    ) -> Tuple[OTPAttemptOutcome, int]:
        result = await self._otp_attempt(
            keys=[self._otp_key(target, purpose)],
            args=[record_id, candidate_hash, now.timestamp()],
        )
        return OTPAttemptOutcome(result[0]), int(result[1])

    async def discard_otp(
        self, target: str, purpose: OTPPurpose, *, record_id: Optional[str] = None
    ) -> bool:
        removed = await self._otp_discard(
            keys=[self._otp_key(target, purpose)], args=[record_id or ""]
        )
        return bool(removed)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
