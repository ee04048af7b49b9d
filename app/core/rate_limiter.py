import math
import time
from typing import Optional, Dict, Any

import redis

from app.core.config import REDIS_URL, TOTP_MAX_ATTEMPTS, TOTP_LOCKOUT_SECONDS

# Increment inside the current window, or open a new one at 1.
# KEYS[1] = entry hash, ARGV[1] = now, ARGV[2] = window seconds
_RECORD_FAILURE = """
local start = redis.call('HGET', KEYS[1], 'window_start')
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
if (not start) or (now - tonumber(start) >= window) then
    redis.call('HSET', KEYS[1], 'failure_count', 1, 'window_start', ARGV[1])
    redis.call('EXPIRE', KEYS[1], math.ceil(window))
    return 1
end
return redis.call('HINCRBY', KEYS[1], 'failure_count', 1)
"""


class RedisRateLimiter:
    """Failed-attempt limiter shared by every instance through Redis"""

    def __init__(self, redis_client=None, redis_url: str = REDIS_URL,
                 max_attempts: int = TOTP_MAX_ATTEMPTS, lockout_seconds: int = TOTP_LOCKOUT_SECONDS):
        self.redis = redis_client if redis_client is not None else redis.from_url(redis_url)
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._record_failure = self.redis.register_script(_RECORD_FAILURE)

    def _key(self, key: str) -> str:
        return f"ratelimit:totp:{key}"

    def _entry(self, key: str):
        count, start = self.redis.hmget(self._key(key), "failure_count", "window_start")
        if count is None or start is None:
            return None
        return int(count), float(start)

    def record_failure(self, key: str, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return int(self._record_failure(keys=[self._key(key)], args=[repr(float(now)), self.lockout_seconds]))

    def is_locked(self, key: str, now: Optional[float] = None,
                  max_attempts: Optional[int] = None, lockout_duration: Optional[int] = None) -> bool:
        now = time.time() if now is None else now
        max_attempts = max_attempts or self.max_attempts
        lockout_duration = lockout_duration or self.lockout_seconds
        entry = self._entry(key)
        if entry is None:
            return False
        count, start = entry
        return count >= max_attempts and now - start < lockout_duration

    def retry_after(self, key: str, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        if not self.is_locked(key, now):
            return 0.0
        entry = self._entry(key)
        if entry is None:
            return 0.0
        return max(0.0, self.lockout_seconds - (now - entry[1]))

    def record_success(self, key: str) -> None:
        self.redis.delete(self._key(key))

    def reset(self, key: str) -> bool:
        return bool(self.redis.delete(self._key(key)))

    def get_remaining_attempts(self, key: str, now: Optional[float] = None) -> Dict[str, Any]:
        """Get remaining attempts and time until reset"""
        now = time.time() if now is None else now
        entry = self._entry(key)
        if entry is None or now - entry[1] >= self.lockout_seconds:
            return {"remaining": self.max_attempts, "reset_in": 0, "max_attempts": self.max_attempts}
        count, start = entry
        return {
            "remaining": max(0, self.max_attempts - count),
            "reset_in": math.ceil(self.lockout_seconds - (now - start)),
            "max_attempts": self.max_attempts,
        }
