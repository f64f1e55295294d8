"""Invalidation policies for cached subscription statuses."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional

from .metrics import SubscriptionMetricsQueue
from .models import BatchInvalidationResult, CacheEntry
from .performance import InvalidationKind

if TYPE_CHECKING:  # pragma: no cover
    from .cache import SubscriptionCache

logger = logging.getLogger(__name__)

NEAR_EXPIRY_THRESHOLD = timedelta(minutes=5)
MIN_ENTRY_AGE = timedelta(minutes=1)


class SubscriptionChangeType(str, Enum):
    """Subscription lifecycle events that make a cached status stale."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    TIER_CHANGE = "tier_change"


class InvalidationReason(str, Enum):
    CACHE_EXPIRED = "cache_expired"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    NEAR_EXPIRY = "near_expiry"


def evaluate_entry(
    entry: CacheEntry,
    now: datetime,
    *,
    near_expiry_threshold: timedelta = NEAR_EXPIRY_THRESHOLD,
    min_entry_age: timedelta = MIN_ENTRY_AGE,
) -> Optional[InvalidationReason]:
    """Decide whether the periodic sweep should drop ``entry``.

    Besides hard expiry, an entry whose subscription lapses within
    ``near_expiry_threshold`` is dropped once it is older than
    ``min_entry_age``.
    """

    if entry.expires_at <= now:
        return InvalidationReason.CACHE_EXPIRED
    if entry.subscription_expiry is None:
        return None
    if entry.subscription_expiry <= now:
        return InvalidationReason.SUBSCRIPTION_EXPIRED
    time_until_expiry = entry.subscription_expiry - now
    if time_until_expiry <= near_expiry_threshold and now - entry.timestamp > min_entry_age:
        return InvalidationReason.NEAR_EXPIRY
    return None


class CacheInvalidator:
    """Applies lifecycle-event and administrative invalidation to a cache.

    Every change type currently deletes the user's entry; the type is kept
    for metrics. With ``enhanced`` off the invalidator only deletes.
    """

    def __init__(
        self,
        cache: "SubscriptionCache",
        *,
        enhanced: bool = True,
        metrics: Optional[SubscriptionMetricsQueue] = None,
    ) -> None:
        self._cache = cache
        self._enhanced = enhanced
        self._metrics = metrics

    def invalidate_on_event(self, user_id: str, change_type: SubscriptionChangeType | str) -> bool:
        change = SubscriptionChangeType(change_type)
        deleted = self._cache.delete(user_id)

        if not self._enhanced:
            logger.info(
                "Basic invalidation for user %s: %s", user_id, "success" if deleted else "not found"
            )
            return deleted

        logger.info("Invalidated cache for %s - user %s (found=%s)", change.value, user_id, deleted)
        if deleted:
            self._cache.performance_monitor.record_invalidation(InvalidationKind.SUBSCRIPTION)
            if self._metrics is not None:
                self._metrics.emit(
                    "cache_invalidated",
                    source="cache_invalidation",
                    user_id=user_id,
                    data={"invalidation_reason": change.value},
                )
        return deleted

    def invalidate_user(self, user_id: str) -> bool:
        deleted = self._cache.delete(user_id)
        if deleted:
            self._cache.performance_monitor.record_invalidation(InvalidationKind.MANUAL)
        logger.info("Invalidated cache for user %s: %s", user_id, deleted)
        return deleted

    def invalidate_multiple_users(self, user_ids: Iterable[str]) -> BatchInvalidationResult:
        invalidated = 0
        failed = 0
        for user_id in user_ids:
            if self.invalidate_user(user_id):
                invalidated += 1
            else:
                failed += 1
        logger.info("Batch invalidation: %s invalidated, %s failed", invalidated, failed)
        return BatchInvalidationResult(invalidated=invalidated, failed=failed)
