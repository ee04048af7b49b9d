import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from app.core.config import TOTP_PERIOD, TOTP_TOLERANCE_WINDOWS, REPLAY_SAFETY_MARGIN_SECONDS
from app.core.keyed_lock import KeyedLock
from app.core.security import digest

logger = logging.getLogger(__name__)


class UsedTokenStore(ABC):
    """Keyed set of consumed TOTP codes with time-based eviction"""

    @abstractmethod
    def add_if_absent(self, token_key: str, consumed_at: float, ttl: int) -> bool:
        """Insert the key unless present. Must be one atomic check-and-set."""
        pass

    @abstractmethod
    def evict_older_than(self, cutoff: float) -> int:
        pass


class MemoryUsedTokenStore(UsedTokenStore):
    """Single-instance store: {token_key: consumed_at}"""

    def __init__(self):
        self._entries: Dict[str, float] = {}
        self._locks = KeyedLock()

    def add_if_absent(self, token_key: str, consumed_at: float, ttl: int) -> bool:
        with self._locks.hold(token_key):
            if token_key in self._entries:
                return False
            self._entries[token_key] = consumed_at
            return True

    def evict_older_than(self, cutoff: float) -> int:
        expired = [key for key, consumed_at in list(self._entries.items()) if consumed_at < cutoff]
        for key in expired:
            with self._locks.hold(key):
                if self._entries.get(key, cutoff) < cutoff:
                    del self._entries[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} used TOTP tokens")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisUsedTokenStore(UsedTokenStore):
    """Shared store for multi-instance deployments. Redis TTLs do the eviction."""

    def __init__(self, redis_client, prefix: str = "totp:used"):
        self.redis = redis_client
        self.prefix = prefix

    def add_if_absent(self, token_key: str, consumed_at: float, ttl: int) -> bool:
        return bool(self.redis.set(f"{self.prefix}:{token_key}", int(consumed_at), nx=True, ex=ttl))

    def evict_older_than(self, cutoff: float) -> int:
        return 0


class ReplayGuard:
    """Rejects a (seed, code, window) triple that has already been accepted once."""

    def __init__(self, store: Optional[UsedTokenStore] = None, period: int = TOTP_PERIOD,
                 tolerance_windows: int = TOTP_TOLERANCE_WINDOWS,
                 safety_margin: int = REPLAY_SAFETY_MARGIN_SECONDS):
        self.store = store or MemoryUsedTokenStore()
        # never shorter than the full span during which one code is acceptable
        self.retention = max(
            tolerance_windows * period + safety_margin,
            (2 * tolerance_windows + 1) * period,
        )

    def admit(self, secret_fingerprint: str, code: str, window_index: int,
              now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        self.sweep(now)
        token_key = digest(secret_fingerprint, code, window_index)
        admitted = self.store.add_if_absent(token_key, now, self.retention)
        if not admitted:
            logger.debug(f"Replay rejected for window {window_index}")
        return admitted

    def admit_span(self, secret_fingerprint: str, code: str, window_indexes: Iterable[int],
                   now: Optional[float] = None) -> bool:
        """Claim the code in every window it could have matched, for matches whose
        window is unknown. Every key is claimed even after a collision."""
        now = time.time() if now is None else now
        self.sweep(now)
        claimed = [
            self.store.add_if_absent(digest(secret_fingerprint, code, window), now, self.retention)
            for window in window_indexes
        ]
        if not all(claimed):
            logger.debug("Replay rejected for a window-less match")
        return bool(claimed) and all(claimed)

    def sweep(self, now: float) -> int:
        return self.store.evict_older_than(now - self.retention)
