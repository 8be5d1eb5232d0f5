from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from turnstile.logging import get_logger
from turnstile.storage.common import ttl_millis
from turnstile.storage.errors import BackendUnavailable
from turnstile.storage.models import OneTimeCodeRecord, OTPPurpose, RefreshRecord, utcnow

logger = get_logger(__name__)


class RedisRecordStore:
    """Refresh and one-time-code records in Redis.

    Keys expire on their own, so ``purge_expired`` has nothing to do. One-time
    code keys linger one code lifetime past expiry so verification can still
    tell an expired code from a missing one.
    Version bumps and compare-and-delete run as Lua scripts to stay atomic
    across processes.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Overwrite the record, carrying the stored version forward by one
    _REPLACE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
local version = 0
if current then
  version = tonumber(cjson.decode(current)['version']) or 0
end
local record = cjson.decode(ARGV[1])
record['version'] = version + 1
redis.call('SET', KEYS[1], cjson.encode(record), 'PX', tonumber(ARGV[2]))
return version + 1
"""

    # Write only if the stored version still equals ARGV[1] (0 = absent)
    _CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
local expected = tonumber(ARGV[1])
local version = 0
if current then
  version = tonumber(cjson.decode(current)['version']) or 0
end
if version ~= expected then
  return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'PX', tonumber(ARGV[3]))
return 1
"""

    # Delete the code only if its hash still matches
    _CONSUME_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
  return 0
end
if cjson.decode(current)['code_hash'] ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "turnstile",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._replace = self.client.register_script(self._REPLACE_SCRIPT)
        self._cas = self.client.register_script(self._CAS_SCRIPT)
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before selecting this backend."""
        # Short-lived sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _refresh_key(self, subject_id: str) -> str:
        return f"{self.prefix}:refresh:{subject_id}"

    def _otp_key(self, subject_id: str, purpose: OTPPurpose) -> str:
        return f"{self.prefix}:otp:{OTPPurpose(purpose).value}:{subject_id}"

    async def get_refresh(self, subject_id: str) -> Optional[RefreshRecord]:
        raw = await self._call("get", self.client.get(self._refresh_key(subject_id)))
        return RefreshRecord.from_dict(json.loads(raw)) if raw else None

    async def replace_refresh(self, record: RefreshRecord) -> RefreshRecord:
        version = await self._call(
            "replace_refresh",
            self._replace(
                keys=[self._refresh_key(record.subject_id)],
                args=[json.dumps(record.to_dict()), ttl_millis(record.expires_at, utcnow())],
            ),
        )
        record.version = int(version)
        return record

    async def compare_and_set_refresh(self, record: RefreshRecord, expected_version: int) -> bool:
        payload = {**record.to_dict(), "version": expected_version + 1}
        written = await self._call(
            "compare_and_set_refresh",
            self._cas(
                keys=[self._refresh_key(record.subject_id)],
                args=[
                    expected_version,
                    json.dumps(payload),
                    ttl_millis(record.expires_at, utcnow()),
                ],
            ),
        )
        return bool(int(written))

    async def delete_refresh(self, subject_id: str) -> bool:
        removed = await self._call("delete_refresh", self.client.delete(self._refresh_key(subject_id)))
        return bool(removed)

    async def put_otp(self, record: OneTimeCodeRecord) -> None:
        # Key outlives expires_at by one code lifetime so verify can report EXPIRED
        evict_at = record.expires_at + (record.expires_at - record.issued_at)
        await self._call(
            "put_otp",
            self.client.set(
                self._otp_key(record.subject_id, record.purpose),
                json.dumps(record.to_dict()),
                px=ttl_millis(evict_at, utcnow()),
            ),
        )

    async def get_otp(self, subject_id: str, purpose: OTPPurpose) -> Optional[OneTimeCodeRecord]:
        raw = await self._call("get_otp", self.client.get(self._otp_key(subject_id, purpose)))
        return OneTimeCodeRecord.from_dict(json.loads(raw)) if raw else None

    async def consume_otp(self, subject_id: str, purpose: OTPPurpose, code_hash: str) -> bool:
        consumed = await self._call(
            "consume_otp",
            self._consume(keys=[self._otp_key(subject_id, purpose)], args=[code_hash]),
        )
        return bool(int(consumed))

    async def purge_expired(self, now: datetime) -> int:
        return 0

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            logger.warning("redis_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        await self.client.aclose()

    async def _call(self, operation: str, awaitable):
        try:
            return await awaitable
        except RedisError as exc:
            logger.error("redis_operation_failed", operation=operation, error=str(exc))
            raise BackendUnavailable(f"record backend unavailable during {operation}") from exc
