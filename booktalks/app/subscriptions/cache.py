"""Subscription-aware in-memory cache with intelligent TTL and LRU eviction."""
from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from .invalidation import InvalidationReason, evaluate_entry
from .models import (
    CacheConfig,
    CacheEntry,
    CacheLookup,
    CacheOperationResult,
    CacheStats,
    SubscriptionStatus,
)
from .performance import CachePerformanceMonitor, InvalidationKind

logger = logging.getLogger(__name__)

CACHE_CLEANUP_INTERVAL = 60.0

_UNSET: Any = object()


def expiry_fingerprint(subscription_expiry: datetime) -> str:
    material = subscription_expiry.astimezone(timezone.utc).isoformat().encode("utf-8")
    return hashlib.sha256(material).hexdigest()[:16]


class SubscriptionCache:
    """Key -> status store owned exclusively by this object.

    Keys embed a fingerprint of the subscription expiry, so a renewed or
    changed subscription never reads the entry written for the old one. A
    per-user index tracks the user's current key for lookups that do not know
    the expiry up front. All access happens on one event loop; there is no
    locking.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        *,
        monitor: Optional[CachePerformanceMonitor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cleanup_interval: float = CACHE_CLEANUP_INTERVAL,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.performance_monitor = monitor or CachePerformanceMonitor(clock=self._clock)
        self._cleanup_interval = cleanup_interval
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._user_keys: Dict[str, str] = {}
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    def __len__(self) -> int:
        return len(self._entries)

    def build_key(self, user_id: str, subscription_expiry: Optional[datetime] = None) -> str:
        key = f"{self.config.key_prefix}{user_id}"
        if subscription_expiry is not None:
            key = f"{key}:{expiry_fingerprint(subscription_expiry)}"
        return key

    def compute_ttl(self, status: SubscriptionStatus, now: datetime) -> float:
        """Seconds an entry for ``status`` may live.

        Negative answers live half as long as the base TTL, and a known expiry
        closer than the TTL caps it. Both are floored at ``min_ttl``.
        """

        ttl = float(self.config.ttl)
        if not status.has_active_subscription:
            ttl = ttl / 2
        if status.subscription_expiry is not None:
            remaining = (status.subscription_expiry - now).total_seconds()
            if remaining < ttl:
                ttl = remaining
        return max(ttl, float(self.config.min_ttl))

    def get(self, user_id: str, subscription_expiry: Any = _UNSET) -> CacheLookup:
        started = time.perf_counter()
        try:
            lookup = self._lookup(user_id, subscription_expiry)
        except Exception:
            logger.exception("Subscription cache lookup failed for user %s", user_id)
            lookup = CacheLookup(data=None, result=CacheOperationResult.ERROR)
        elapsed_ms = (time.perf_counter() - started) * 1000
        if lookup.is_hit:
            self.performance_monitor.record_hit(elapsed_ms)
        else:
            self.performance_monitor.record_miss(elapsed_ms)
        return lookup

    def _lookup(self, user_id: str, subscription_expiry: Any) -> CacheLookup:
        if subscription_expiry is _UNSET:
            key = self._user_keys.get(user_id)
        else:
            key = self.build_key(user_id, subscription_expiry)
        entry = self._entries.get(key) if key else None
        if entry is None:
            return CacheLookup(data=None, result=CacheOperationResult.MISS)

        now = self._clock()
        if entry.is_expired(now):
            self._remove(key)
            self.performance_monitor.record_invalidation(InvalidationKind.EXPIRY)
            return CacheLookup(data=None, result=CacheOperationResult.EXPIRED)

        entry.touch(now)
        self._entries.move_to_end(key)
        return CacheLookup(data=entry.data, result=CacheOperationResult.HIT)

    def set(self, user_id: str, status: SubscriptionStatus) -> CacheOperationResult:
        try:
            now = self._clock()
            key = self.build_key(user_id, status.subscription_expiry)

            previous_key = self._user_keys.get(user_id)
            if previous_key is not None and previous_key != key:
                self._remove(previous_key)

            if key not in self._entries:
                while len(self._entries) >= self.config.max_entries:
                    self._evict_least_recently_used()

            ttl = self.compute_ttl(status, now)
            self._entries[key] = CacheEntry(
                data=status,
                timestamp=now,
                expires_at=now + timedelta(seconds=ttl),
                subscription_expiry=status.subscription_expiry,
                user_id=user_id,
            )
            self._entries.move_to_end(key)
            self._user_keys[user_id] = key
            return CacheOperationResult.STORED
        except Exception:
            logger.exception("Failed to cache subscription status for user %s", user_id)
            return CacheOperationResult.ERROR

    def delete(self, user_id: str) -> bool:
        key = self._user_keys.get(user_id)
        if key is None:
            return False
        return self._remove(key)

    def clear(self) -> None:
        self._entries.clear()
        self._user_keys.clear()

    def peek(self, user_id: str) -> Optional[CacheEntry]:
        """Return the raw entry without touching access metadata or counters."""

        key = self._user_keys.get(user_id)
        return self._entries.get(key) if key else None

    def sweep(self) -> int:
        """Drop expired entries and entries whose subscription is about to lapse."""

        now = self._clock()
        removed = 0
        for key, entry in list(self._entries.items()):
            reason = evaluate_entry(entry, now)
            if reason is None:
                continue
            if reason == InvalidationReason.NEAR_EXPIRY:
                logger.debug("Proactively invalidating near-expiry entry %s", key)
            self._remove(key)
            self.performance_monitor.record_invalidation(InvalidationKind.EXPIRY)
            removed += 1
        if removed:
            logger.info("Subscription cache sweep removed %s entries", removed)
        return removed

    def cleanup_expired(self) -> int:
        """Drop only entries whose TTL or subscription expiry has already passed."""

        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)
            self.performance_monitor.record_invalidation(InvalidationKind.EXPIRY)
        return len(expired)

    def start(self) -> None:
        """Schedule the periodic sweep on the running event loop."""

        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        loop = asyncio.get_running_loop()
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                self.sweep()
            except Exception:  # pragma: no cover
                logger.exception("Subscription cache sweep failed")

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    def destroy(self) -> None:
        """Cancel the background sweep and drop every entry."""

        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
        self.clear()

    async def aclose(self) -> None:
        task = self._cleanup_task
        self.destroy()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._cleanup_task = None

    def get_stats(self) -> CacheStats:
        return self.performance_monitor.get_stats()

    def get_info(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "users": len(self._user_keys),
            "maxEntries": self.config.max_entries,
            "ttl": self.config.ttl,
            "keyPrefix": self.config.key_prefix,
            "compression": self.config.compression,
            "cleanupRunning": self.cleanup_running,
        }

    def _evict_least_recently_used(self) -> None:
        key, entry = self._entries.popitem(last=False)
        if self._user_keys.get(entry.user_id) == key:
            del self._user_keys[entry.user_id]
        self.performance_monitor.record_eviction()
        logger.debug("Evicted least recently used subscription cache entry %s", key)

    def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        if self._user_keys.get(entry.user_id) == key:
            del self._user_keys[entry.user_id]
        return True
