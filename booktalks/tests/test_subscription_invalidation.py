from __future__ import annotations

from datetime import timedelta

import pytest

from booktalks.app.subscriptions import (
    CacheConfig,
    CacheInvalidator,
    SubscriptionCache,
    SubscriptionChangeType,
    SubscriptionMetricsQueue,
    SubscriptionStatus,
    SubscriptionTier,
    ValidationSource,
)
from booktalks.app.subscriptions.invalidation import InvalidationReason, evaluate_entry
from booktalks.app.subscriptions.models import CacheEntry, CacheOperationResult


def active_status(expiry) -> SubscriptionStatus:
    return SubscriptionStatus(
        has_active_subscription=True,
        current_tier=SubscriptionTier.PRIVILEGED,
        subscription_expiry=expiry,
        is_valid=True,
        validation_source=ValidationSource.CONSOLIDATED_QUERY,
    )


def make_entry(clock, *, age, ttl, subscription_expiry):
    created = clock.now - age
    return CacheEntry(
        data=active_status(subscription_expiry),
        timestamp=created,
        expires_at=created + ttl,
        subscription_expiry=subscription_expiry,
        user_id="user-1",
    )


def test_evaluate_entry_reports_cache_expiry(clock):
    entry = make_entry(
        clock,
        age=timedelta(minutes=10),
        ttl=timedelta(minutes=5),
        subscription_expiry=clock.now + timedelta(days=1),
    )

    assert evaluate_entry(entry, clock.now) == InvalidationReason.CACHE_EXPIRED


def test_evaluate_entry_reports_subscription_expiry(clock):
    entry = make_entry(
        clock,
        age=timedelta(minutes=1),
        ttl=timedelta(minutes=5),
        subscription_expiry=clock.now - timedelta(seconds=1),
    )

    assert evaluate_entry(entry, clock.now) == InvalidationReason.SUBSCRIPTION_EXPIRED


def test_evaluate_entry_near_expiry_requires_minimum_age(clock):
    expiry = clock.now + timedelta(minutes=3)
    young = make_entry(
        clock, age=timedelta(seconds=30), ttl=timedelta(minutes=5), subscription_expiry=expiry
    )
    old = make_entry(
        clock, age=timedelta(minutes=2), ttl=timedelta(minutes=5), subscription_expiry=expiry
    )

    assert evaluate_entry(young, clock.now) is None
    assert evaluate_entry(old, clock.now) == InvalidationReason.NEAR_EXPIRY


def test_evaluate_entry_keeps_entries_without_expiry(clock):
    entry = make_entry(
        clock, age=timedelta(minutes=2), ttl=timedelta(minutes=5), subscription_expiry=None
    )

    assert evaluate_entry(entry, clock.now) is None


@pytest.fixture
def cache(clock) -> SubscriptionCache:
    return SubscriptionCache(CacheConfig(), clock=clock)


@pytest.mark.parametrize("change_type", list(SubscriptionChangeType))
def test_every_lifecycle_event_invalidates(cache, clock, metrics_sink, change_type):
    metrics = SubscriptionMetricsQueue(metrics_sink)
    invalidator = CacheInvalidator(cache, metrics=metrics)
    cache.set("user-1", active_status(clock.now + timedelta(days=3)))

    assert invalidator.invalidate_on_event("user-1", change_type.value) is True

    assert cache.get("user-1").result == CacheOperationResult.MISS
    assert cache.performance_monitor.invalidation.subscription_based_invalidations == 1
    assert metrics.pending == 1


def test_event_for_uncached_user_reports_not_found(cache, metrics_sink):
    metrics = SubscriptionMetricsQueue(metrics_sink)
    invalidator = CacheInvalidator(cache, metrics=metrics)

    assert invalidator.invalidate_on_event("ghost", SubscriptionChangeType.TIER_CHANGE) is False
    assert metrics.pending == 0
    assert cache.performance_monitor.invalidation.total_invalidations == 0


def test_basic_invalidation_skips_metrics(cache, clock, metrics_sink):
    metrics = SubscriptionMetricsQueue(metrics_sink)
    invalidator = CacheInvalidator(cache, enhanced=False, metrics=metrics)
    cache.set("user-1", active_status(clock.now + timedelta(days=3)))

    assert invalidator.invalidate_on_event("user-1", "subscription_renewed") is True
    assert cache.peek("user-1") is None
    assert metrics.pending == 0
    assert cache.performance_monitor.invalidation.total_invalidations == 0


def test_unknown_change_type_is_rejected(cache):
    invalidator = CacheInvalidator(cache)

    with pytest.raises(ValueError):
        invalidator.invalidate_on_event("user-1", "subscription_paused")


def test_manual_invalidation_of_many_users(cache, clock):
    invalidator = CacheInvalidator(cache)
    for user_id in ("a", "b"):
        cache.set(user_id, active_status(clock.now + timedelta(days=3)))

    result = invalidator.invalidate_multiple_users(["a", "b", "c"])

    assert (result.invalidated, result.failed) == (2, 1)
    assert len(cache) == 0
    assert cache.performance_monitor.invalidation.manual_invalidations == 2
