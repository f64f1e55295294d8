"""Proactive cache population for users likely to be checked soon."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .batch import SupportsValidate
from .cache import SubscriptionCache
from .models import ActivitySignal, CacheWarmingResult, ValidationOptions
from .repository import SubscriptionRepository

logger = logging.getLogger(__name__)

ACTIVITY_WINDOW = timedelta(days=7)
ROLE_ACTIVITY_WEIGHT = 2
SUBSCRIPTION_ACTIVITY_WEIGHT = 1


@dataclass
class _ActivityScore:
    score: int
    last_activity: datetime


def rank_active_users(
    role_activity: Sequence[ActivitySignal],
    subscription_activity: Sequence[ActivitySignal],
    limit: int,
) -> List[str]:
    """Order users by weighted activity count, breaking ties by recency."""

    scores: Dict[str, _ActivityScore] = {}

    def _add(signals: Sequence[ActivitySignal], weight: int) -> None:
        for signal in signals:
            current = scores.get(signal.user_id)
            if current is None:
                scores[signal.user_id] = _ActivityScore(score=weight, last_activity=signal.occurred_at)
                continue
            current.score += weight
            if signal.occurred_at > current.last_activity:
                current.last_activity = signal.occurred_at

    _add(role_activity, ROLE_ACTIVITY_WEIGHT)
    _add(subscription_activity, SUBSCRIPTION_ACTIVITY_WEIGHT)

    ranked = sorted(
        scores.items(),
        key=lambda item: (item[1].score, item[1].last_activity),
        reverse=True,
    )
    return [user_id for user_id, _ in ranked[:limit]]


class CacheWarmer:
    def __init__(
        self,
        cache: SubscriptionCache,
        validator: SupportsValidate,
        repository: SubscriptionRepository,
        *,
        enabled: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._validator = validator
        self._repository = repository
        self.enabled = enabled
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    async def get_frequently_accessed_users(self, limit: int = 50) -> List[str]:
        since = self._clock() - ACTIVITY_WINDOW

        role_activity: Sequence[ActivitySignal] = ()
        try:
            role_activity = await self._repository.fetch_role_activity(since, limit * 2)
        except Exception as exc:
            logger.warning("Error fetching role activity for cache warming: %s", exc)

        subscription_activity: Sequence[ActivitySignal] = ()
        try:
            subscription_activity = await self._repository.fetch_subscription_activity(since, limit)
        except Exception as exc:
            logger.warning("Error fetching subscription activity for cache warming: %s", exc)

        users = rank_active_users(role_activity, subscription_activity, limit)
        logger.info("Identified %s frequently accessed users", len(users))
        return users

    async def warm_subscription_cache(
        self,
        user_ids: Sequence[str],
        *,
        batch_size: int = 5,
        batch_delay: float = 0.1,
    ) -> CacheWarmingResult:
        started = time.perf_counter()
        warmed = 0
        failed = 0
        skipped = 0

        async def _warm(user_id: str) -> str:
            if self._cache.get(user_id).is_hit:
                return "skipped"
            try:
                result = await self._validator.validate(user_id, ValidationOptions(use_cache=False))
            except Exception:
                logger.exception("Error warming cache for user %s", user_id)
                return "failed"
            if not result.success:
                logger.warning("Failed to validate user %s while warming cache", user_id)
                return "failed"
            self._cache.set(user_id, result.status)
            return "warmed"

        ids = list(user_ids)
        for offset in range(0, len(ids), batch_size):
            batch = ids[offset : offset + batch_size]
            for outcome in await asyncio.gather(*(_warm(user_id) for user_id in batch)):
                if outcome == "warmed":
                    warmed += 1
                elif outcome == "failed":
                    failed += 1
                else:
                    skipped += 1
            if offset + batch_size < len(ids) and batch_delay > 0:
                await self._sleep(batch_delay)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Cache warming completed: %s warmed, %s failed, %s skipped in %.1fms",
            warmed,
            failed,
            skipped,
            duration_ms,
        )
        return CacheWarmingResult(
            warmed=warmed, failed=failed, skipped=skipped, duration_ms=duration_ms
        )

    async def warm_frequent_user_cache(
        self,
        *,
        limit: int = 50,
        batch_size: int = 5,
        respect_feature_flags: bool = True,
    ) -> CacheWarmingResult:
        if respect_feature_flags and not self.enabled:
            logger.info("Cache warming disabled, skipping intelligent warming")
            return CacheWarmingResult()

        users = await self.get_frequently_accessed_users(limit)
        if not users:
            logger.info("No frequently accessed users identified")
            return CacheWarmingResult()

        result = await self.warm_subscription_cache(users, batch_size=batch_size)
        self._cache.performance_monitor.record_warming(result.duration_ms, result.failed == 0)
        return result
