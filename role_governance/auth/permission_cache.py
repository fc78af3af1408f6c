"""
Process-local, TTL-bound cache of permission check results.

The cache is an explicitly constructed instance owned by the permission
checker. All access goes through a re-entrant lock so concurrent checks and
invalidations for the same or different users never observe a partially
updated key index.

Entries are evaluated lazily: ``get`` treats an entry whose expiration instant
has been reached (``now >= expires``) as a miss and drops it. Invalidation is
per user, through an index of the keys stored for each user, so that it does
not depend on how keys are formatted.

Each user has a generation that invalidation and clearing advance. A check
reads the generation before it evaluates and hands it to ``set``; a result
computed against assignments that were invalidated in the meantime is
dropped instead of stored. Expired entries for keys that are never read again
are swept every ``sweep_interval`` writes.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

from ..utils.logging import get_logger
from ..utils.monitoring import GovernanceMetrics

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL = 256

Generation = Tuple[int, int]


@dataclass(frozen=True)
class PermissionCacheEntry:
    user_id: str
    result: bool
    expires: float


class PermissionCache:
    """Thread-safe permission result cache with per-user invalidation."""

    def __init__(
        self,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[GovernanceMetrics] = None,
        sweep_interval: int = DEFAULT_SWEEP_INTERVAL,
    ):
        if ttl <= 0:
            raise ValueError("Cache TTL must be positive")
        if sweep_interval <= 0:
            raise ValueError("Sweep interval must be positive")
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.RLock()
        self._entries: Dict[str, PermissionCacheEntry] = {}
        self._keys_by_user: Dict[str, Set[str]] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._writes = 0

    def get(self, key: str) -> Optional[bool]:
        """Return the cached result, or ``None`` on a miss or an expired entry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() >= entry.expires:
                self._discard(key)
                entry = None
        self._track('hit' if entry is not None else 'miss')
        return entry.result if entry is not None else None

    def generation(self, user_id: str) -> Generation:
        """Current invalidation generation for ``user_id``."""
        with self._lock:
            return self._epoch, self._generations.get(user_id, 0)

    def set(self, key: str, user_id: str, result: bool, generation: Optional[Generation] = None) -> bool:
        """
        Store ``result`` under ``key``.

        When ``generation`` is given and the user has been invalidated since
        it was read, nothing is stored. Returns whether the entry was stored.
        """
        with self._lock:
            if generation is not None and generation != (self._epoch, self._generations.get(user_id, 0)):
                stored = False
            else:
                now = self._clock()
                self._entries[key] = PermissionCacheEntry(
                    user_id=user_id,
                    result=result,
                    expires=now + self.ttl,
                )
                self._keys_by_user.setdefault(user_id, set()).add(key)
                self._writes += 1
                if self._writes % self.sweep_interval == 0:
                    self._sweep(now)
                stored = True
        if stored:
            self._track('store')
        else:
            logger.debug("Discarded permission result computed before invalidation", user_id=user_id)
        return stored

    def invalidate_user(self, user_id: str) -> int:
        """Remove every entry stored for ``user_id``. Returns the number removed."""
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            keys = self._keys_by_user.pop(user_id, set())
            for key in keys:
                self._entries.pop(key, None)
        self._track('invalidate', len(keys))
        logger.debug("Permission cache invalidated", user_id=user_id, entries=len(keys))
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._keys_by_user.clear()
            self._generations.clear()
            self._epoch += 1
        self._track('clear', count)
        logger.debug("Permission cache cleared", entries=count)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            return self._sweep(self._clock())

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and self._clock() < entry.expires

    def _sweep(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if now >= entry.expires]
        for key in expired:
            self._discard(key)
        return len(expired)

    def _discard(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        user_keys = self._keys_by_user.get(entry.user_id)
        if user_keys is not None:
            user_keys.discard(key)
            if not user_keys:
                del self._keys_by_user[entry.user_id]

    def _track(self, event: str, count: int = 1) -> None:
        if self._metrics is not None:
            self._metrics.track_cache_event(event, count)
