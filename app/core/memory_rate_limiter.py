import time
from dataclasses import dataclass
from typing import Optional, Dict, Any

from app.core.config import TOTP_MAX_ATTEMPTS, TOTP_LOCKOUT_SECONDS
from app.core.keyed_lock import KeyedLock


@dataclass
class RateLimitEntry:
    failure_count: int
    window_start: float


class MemoryRateLimiter:
    """In-memory failed-attempt limiter, serialized per principal key"""

    def __init__(self, max_attempts: int = TOTP_MAX_ATTEMPTS, lockout_seconds: int = TOTP_LOCKOUT_SECONDS):
        self.storage: Dict[str, RateLimitEntry] = {}
        self.locks = KeyedLock()
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds

    def record_failure(self, key: str, now: Optional[float] = None) -> int:
        """Count one failure; an expired window restarts at 1. Returns the new count."""
        now = time.time() if now is None else now
        self.cleanup_old_entries(now)
        with self.locks.hold(key):
            entry = self.storage.get(key)
            if entry is None or now - entry.window_start >= self.lockout_seconds:
                entry = RateLimitEntry(failure_count=0, window_start=now)
                self.storage[key] = entry
            entry.failure_count += 1
            return entry.failure_count

    def is_locked(self, key: str, now: Optional[float] = None,
                  max_attempts: Optional[int] = None, lockout_duration: Optional[int] = None) -> bool:
        now = time.time() if now is None else now
        max_attempts = max_attempts or self.max_attempts
        lockout_duration = lockout_duration or self.lockout_seconds
        with self.locks.hold(key):
            entry = self.storage.get(key)
            if entry is None:
                return False
            return entry.failure_count >= max_attempts and now - entry.window_start < lockout_duration

    def retry_after(self, key: str, now: Optional[float] = None) -> float:
        """Seconds of lockout left, 0 when not locked"""
        now = time.time() if now is None else now
        if not self.is_locked(key, now):
            return 0.0
        with self.locks.hold(key):
            entry = self.storage.get(key)
            if entry is None:
                return 0.0
            return max(0.0, self.lockout_seconds - (now - entry.window_start))

    def record_success(self, key: str) -> None:
        with self.locks.hold(key):
            self.storage.pop(key, None)

    def reset(self, key: str) -> bool:
        """Reset limits for a principal (admin function)"""
        with self.locks.hold(key):
            return self.storage.pop(key, None) is not None

    def get_remaining_attempts(self, key: str, now: Optional[float] = None) -> Dict[str, Any]:
        now = time.time() if now is None else now
        with self.locks.hold(key):
            entry = self.storage.get(key)
            if entry is None or now - entry.window_start >= self.lockout_seconds:
                return {"remaining": self.max_attempts, "reset_in": 0, "max_attempts": self.max_attempts}
            return {
                "remaining": max(0, self.max_attempts - entry.failure_count),
                "reset_in": int(self.lockout_seconds - (now - entry.window_start)),
                "max_attempts": self.max_attempts,
            }

    def cleanup_old_entries(self, now: Optional[float] = None) -> int:
        """Cleanup expired windows to prevent memory leaks"""
        now = time.time() if now is None else now
        expired = [
            key for key, entry in list(self.storage.items())
            if now - entry.window_start >= self.lockout_seconds
        ]
        for key in expired:
            with self.locks.hold(key):
                entry = self.storage.get(key)
                if entry is not None and now - entry.window_start >= self.lockout_seconds:
                    del self.storage[key]
        return len(expired)
