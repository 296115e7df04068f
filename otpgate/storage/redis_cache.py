from __future__ import annotations

import functools
import hashlib
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from otpgate.logging import get_logger
from otpgate.storage.errors import StoreUnavailable
from otpgate.storage.models import (
    Challenge,
    RateRule,
    RateWindow,
    RefreshRecord,
    SuspensionRecord,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Redis keeps records slightly past their logical expiry so reads can still
# report "expired" rather than "not found" before the key disappears.
REAP_GRACE_SECONDS = 60


def _store_call(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Translate Redis client failures into ``StoreUnavailable``."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except RedisError as exc:
            logger.error(
                "redis_store_unavailable",
                operation=fn.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                "backing store unavailable", detail={"operation": fn.__name__}
            ) from exc

    return wrapper


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return repr(value.timestamp())


def _dt(raw: Any) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    return datetime.fromtimestamp(float(raw), tz=timezone.utc)


def _ttl_until(expires_at: datetime, now: Optional[datetime] = None) -> int:
    """Seconds until ``expires_at`` plus the reap grace, clamped to >= 1."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(1, math.ceil((expires_at - now).total_seconds()) + REAP_GRACE_SECONDS)


class RedisStore:
    """Redis implementation of the challenge, rate-window, suspension and
    refresh-token stores.

    Multi-step mutations run as Lua scripts so they are atomic on the server.
    Subjects are hashed into keys to avoid delimiter injection.
    """

    # Fixed-window check-and-consume across any number of counters.
    # ARGV[1] = now, then (limit, window_seconds) per key.
    _RATE_WINDOW_SCRIPT = """
local now = tonumber(ARGV[1])
local counts = {}
local starts = {}
local blocked = {}
local any_blocked = false
for i = 1, #KEYS do
  local limit = tonumber(ARGV[2 * i])
  local window = tonumber(ARGV[2 * i + 1])
  local data = redis.call('HMGET', KEYS[i], 'count', 'start')
  local count = tonumber(data[1])
  local start = tonumber(data[2])
  if count == nil or start == nil or now >= start + window then
    count = 0
    start = now
  end
  counts[i] = count
  starts[i] = start
  if count >= limit then
    blocked[i] = 1
    any_blocked = true
  else
    blocked[i] = 0
  end
end
local result = {}
for i = 1, #KEYS do
  local window = tonumber(ARGV[2 * i + 1])
  if not any_blocked then
    counts[i] = counts[i] + 1
    redis.call('HSET', KEYS[i], 'count', counts[i], 'start', tostring(starts[i]))
    redis.call('EXPIRE', KEYS[i], math.max(math.ceil(starts[i] + window - now), 1))
  end
  table.insert(result, counts[i])
  table.insert(result, tostring(starts[i]))
  table.insert(result, blocked[i])
end
return result
"""

    # Record a failed redemption. Returns {failures, until, last}.
    _SUSPENSION_FAILURE_SCRIPT = """
local now = tonumber(ARGV[1])
local max_failures = tonumber(ARGV[2])
local lockout = tonumber(ARGV[3])
local window = tonumber(ARGV[4])
local data = redis.call('HMGET', KEYS[1], 'failures', 'until', 'last')
local failures = tonumber(data[1]) or 0
local suspended_until = tonumber(data[2])
local last = tonumber(data[3])
if suspended_until ~= nil and now < suspended_until then
  return {failures, tostring(suspended_until), tostring(last or now)}
end
if suspended_until ~= nil then
  failures = 0
elseif last ~= nil and now - last >= window then
  failures = 0
end
failures = failures + 1
local until_value = ''
if failures >= max_failures then
  until_value = tostring(now + lockout)
end
redis.call('DEL', KEYS[1])
redis.call('HSET', KEYS[1], 'failures', failures, 'last', tostring(now), 'until', until_value)
redis.call('EXPIRE', KEYS[1], math.ceil(math.max(lockout, window)) + tonumber(ARGV[5]))
return {failures, until_value, tostring(now)}
"""

    # Delete a challenge, optionally only if it still holds ARGV[1].
    _CHALLENGE_DELETE_SCRIPT = """
local code = redis.call('HGET', KEYS[1], 'code')
if not code then
  return 0
end
if ARGV[1] ~= '' and code ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
return 1
"""

    # KEYS[1] = refresh record, KEYS[2] = identity index set; ARGV[1] = token key
    _REFRESH_DELETE_SCRIPT = """
if redis.call('DEL', KEYS[1]) == 0 then
  return 0
end
redis.call('SREM', KEYS[2], ARGV[1])
return 1
"""

    # KEYS[1] = identity index set; ARGV[1] = refresh key prefix
    _REFRESH_DELETE_ALL_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
local removed = 0
for _, token_key in ipairs(members) do
  removed = removed + redis.call('DEL', ARGV[1] .. token_key)
end
redis.call('DEL', KEYS[1])
return removed
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rate_windows = self.client.register_script(self._RATE_WINDOW_SCRIPT)
        self._suspension_failure = self.client.register_script(
            self._SUSPENSION_FAILURE_SCRIPT
        )
        self._challenge_delete = self.client.register_script(self._CHALLENGE_DELETE_SCRIPT)
        self._refresh_delete = self.client.register_script(self._REFRESH_DELETE_SCRIPT)
        self._refresh_delete_all = self.client.register_script(
            self._REFRESH_DELETE_ALL_SCRIPT
        )

    @staticmethod
    def _key(prefix: str, subject: str) -> str:
        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"{prefix}:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # -- challenges -----------------------------------------------------

    @_store_call
    async def put_challenge(self, challenge: Challenge) -> None:
        key = self._key("auth:otp", challenge.identity)
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(
            key,
            mapping={
                "identity": challenge.identity,
                "code": challenge.code,
                "issued_at": _ts(challenge.issued_at),
                "expires_at": _ts(challenge.expires_at),
            },
        )
        pipe.expire(key, _ttl_until(challenge.expires_at, challenge.issued_at))
        await pipe.execute()

    @_store_call
    async def get_challenge(self, identity: str) -> Optional[Challenge]:
        data = await self.client.hgetall(self._key("auth:otp", identity))
        if not data:
            return None
        return Challenge(
            identity=data["identity"],
            code=data["code"],
            issued_at=_dt(data["issued_at"]),
            expires_at=_dt(data["expires_at"]),
        )

    @_store_call
    async def delete_challenge(self, identity: str, *, code: Optional[str] = None) -> bool:
        removed = await self._challenge_delete(
            keys=[self._key("auth:otp", identity)], args=[code or ""]
        )
        return bool(int(removed))

    # -- rate windows ---------------------------------------------------

    @_store_call
    async def consume_rate_windows(
        self, rules: Sequence[RateRule], now: datetime
    ) -> List[RateWindow]:
        keys = [self._key("auth:rate", rule.key) for rule in rules]
        args: list[Any] = [_ts(now)]
        for rule in rules:
            args.extend([rule.limit, rule.window_seconds])
        raw = await self._rate_windows(keys=keys, args=args)
        windows: List[RateWindow] = []
        for index, rule in enumerate(rules):
            count, start, blocked = raw[index * 3 : index * 3 + 3]
            windows.append(
                RateWindow(
                    key=rule.key,
                    count=int(count),
                    window_start=_dt(start),
                    window_seconds=rule.window_seconds,
                    limit=rule.limit,
                    blocked=bool(int(blocked)),
                )
            )
        return windows

    # -- suspensions ----------------------------------------------------

    @_store_call
    async def get_suspension(self, identity: str) -> Optional[SuspensionRecord]:
        data = await self.client.hgetall(self._key("auth:suspension", identity))
        if not data:
            return None
        return SuspensionRecord(
            identity=identity,
            consecutive_failures=int(data.get("failures") or 0),
            suspended_until=_dt(data.get("until")),
            last_failure_at=_dt(data.get("last")),
        )

    @_store_call
    async def record_suspension_failure(
        self,
        identity: str,
        *,
        now: datetime,
        max_failures: int,
        lockout: timedelta,
        failure_window: timedelta,
    ) -> SuspensionRecord:
        failures, until, last = await self._suspension_failure(
            keys=[self._key("auth:suspension", identity)],
            args=[
                _ts(now),
                max_failures,
                int(lockout.total_seconds()),
                int(failure_window.total_seconds()),
                REAP_GRACE_SECONDS,
            ],
        )
        return SuspensionRecord(
            identity=identity,
            consecutive_failures=int(failures),
            suspended_until=_dt(until),
            last_failure_at=_dt(last),
        )

    @_store_call
    async def clear_suspension(self, identity: str) -> None:
        await self.client.delete(self._key("auth:suspension", identity))

    # -- refresh tokens -------------------------------------------------

    _REFRESH_PREFIX = "auth:refresh:"
    _REFRESH_INDEX_PREFIX = "auth:refresh_identity"

    def _refresh_index_key(self, identity: str) -> str:
        return self._key(self._REFRESH_INDEX_PREFIX, identity)

    @_store_call
    async def put_refresh(self, token_key: str, record: RefreshRecord) -> None:
        key = f"{self._REFRESH_PREFIX}{token_key}"
        index_key = self._refresh_index_key(record.identity)
        ttl = _ttl_until(record.expires_at, record.issued_at)
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(
            key,
            mapping={
                "identity": record.identity,
                "issued_at": _ts(record.issued_at),
                "expires_at": _ts(record.expires_at),
            },
        )
        pipe.expire(key, ttl)
        pipe.sadd(index_key, token_key)
        # Every token shares one TTL, so the newest token always outlives the rest
        pipe.expire(index_key, ttl)
        await pipe.execute()

    @_store_call
    async def get_refresh(self, token_key: str) -> Optional[RefreshRecord]:
        data = await self.client.hgetall(f"{self._REFRESH_PREFIX}{token_key}")
        if not data:
            return None
        return RefreshRecord(
            identity=data["identity"],
            issued_at=_dt(data["issued_at"]),
            expires_at=_dt(data["expires_at"]),
        )

    @_store_call
    async def delete_refresh(self, token_key: str) -> bool:
        key = f"{self._REFRESH_PREFIX}{token_key}"
        # A record never changes identity, so the index key read here stays valid
        identity = await self.client.hget(key, "identity")
        if identity is None:
            return False
        removed = await self._refresh_delete(
            keys=[key, self._refresh_index_key(identity)], args=[token_key]
        )
        return bool(int(removed))

    @_store_call
    async def delete_refresh_for_identity(self, identity: str) -> int:
        removed = await self._refresh_delete_all(
            keys=[self._refresh_index_key(identity)],
            args=[self._REFRESH_PREFIX],
        )
        return int(removed)
