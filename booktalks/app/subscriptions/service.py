"""Public entry point composing the subscription cache with validation."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .batch import BatchValidator
from .cache import SubscriptionCache
from .config import SubscriptionFeatureFlags, SubscriptionSettings
from .errors import FailSecureReason, create_fail_secure_status
from .invalidation import CacheInvalidator, SubscriptionChangeType
from .metrics import SubscriptionMetricsQueue, SubscriptionMetricsSink
from .models import (
    BatchConfig,
    BatchInvalidationResult,
    CacheMaintenanceResult,
    CacheOperationResult,
    CacheWarmingResult,
    MembershipConsistency,
    SubscriptionStatus,
    SubscriptionTier,
    ValidationOptions,
    ValidationResult,
    ValidationSource,
)
from .performance import CachePerformanceMonitor
from .repository import SubscriptionRepository
from .validation import SubscriptionValidator
from .warming import CacheWarmer

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60


class SubscriptionService:
    """Answers "what tier does this user have?" without ever failing open.

    Reads go through the cache unless a refresh is forced; misses are
    validated against the backend and successful answers written back. Any
    exception is converted into the MEMBER/inactive fallback status, so the
    entitlement helpers below return ``False``/``MEMBER``/``None`` instead of
    raising.
    """

    def __init__(
        self,
        *,
        repository: SubscriptionRepository,
        validator: SubscriptionValidator,
        cache: SubscriptionCache,
        invalidator: CacheInvalidator,
        warmer: CacheWarmer,
        batch_validator: BatchValidator,
        metrics: Optional[SubscriptionMetricsQueue] = None,
        flags: Optional[SubscriptionFeatureFlags] = None,
        default_timeout: Optional[float] = None,
        warming_interval: Optional[float] = None,
        report_interval: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.validator = validator
        self.cache = cache
        self.invalidator = invalidator
        self.warmer = warmer
        self.batch_validator = batch_validator
        self.metrics = metrics
        self.flags = flags or SubscriptionFeatureFlags()
        self._default_timeout = default_timeout
        self._warming_interval = warming_interval
        self._report_interval = report_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tasks: List[asyncio.Task[None]] = []

    # Status lookups

    async def get_subscription_status(
        self,
        user_id: str,
        *,
        use_cache: bool = True,
        force_refresh: bool = False,
        timeout: Optional[float] = None,
    ) -> SubscriptionStatus:
        try:
            if use_cache and not force_refresh:
                lookup = self.cache.get(user_id)
                if lookup.result == CacheOperationResult.ERROR:
                    logger.warning("Cache unavailable for user %s", user_id)
                    return create_fail_secure_status(
                        user_id, FailSecureReason.CACHE_ERROR, clock=self._clock
                    )
                if lookup.is_hit and lookup.data is not None:
                    logger.debug("Cache hit for user %s", user_id)
                    return lookup.data.model_copy(
                        update={"validation_source": ValidationSource.CACHE}
                    )

            options = ValidationOptions(
                use_cache=use_cache,
                force_refresh=force_refresh,
                timeout=timeout if timeout is not None else self._default_timeout,
            )
            result = await self.validator.validate(user_id, options)
            if use_cache and result.success:
                self.cache.set(user_id, result.status)
            return result.status
        except Exception:
            logger.exception("Error getting subscription status for user %s", user_id)
            return create_fail_secure_status(user_id, FailSecureReason.API_ERROR, clock=self._clock)

    async def check_active_subscription(self, user_id: str, use_cache: bool = True) -> bool:
        """Quick active check; a cache miss queries the backend without caching."""

        try:
            if use_cache:
                lookup = self.cache.get(user_id)
                if lookup.is_hit and lookup.data is not None:
                    return lookup.data.has_active_subscription and not lookup.data.is_expired(
                        self._clock()
                    )
            return await self.validator.has_active_subscription(user_id)
        except Exception:
            logger.exception("Error checking active subscription for user %s", user_id)
            return False

    async def get_subscription_tier(
        self, user_id: str, use_cache: bool = True
    ) -> SubscriptionTier:
        try:
            status = await self.get_subscription_status(user_id, use_cache=use_cache)
            return status.current_tier
        except Exception:
            logger.exception("Error getting subscription tier for user %s", user_id)
            return SubscriptionTier.MEMBER

    async def has_required_tier(
        self,
        user_id: str,
        required_tier: SubscriptionTier | str,
        use_cache: bool = True,
    ) -> bool:
        try:
            required = SubscriptionTier(required_tier)
            if required == SubscriptionTier.MEMBER:
                return True
            status = await self.get_subscription_status(user_id, use_cache=use_cache)
            if not status.has_active_subscription or status.is_expired(self._clock()):
                return False
            return status.current_tier.at_least(required)
        except Exception:
            logger.exception("Error checking required tier for user %s", user_id)
            return False

    async def is_subscription_valid(self, user_id: str, use_cache: bool = True) -> bool:
        try:
            status = await self.get_subscription_status(user_id, use_cache=use_cache)
            return status.is_currently_valid(self._clock())
        except Exception:
            logger.exception("Error checking subscription validity for user %s", user_id)
            return False

    async def get_subscription_expiry(
        self, user_id: str, use_cache: bool = True
    ) -> Optional[datetime]:
        try:
            status = await self.get_subscription_status(user_id, use_cache=use_cache)
            return status.subscription_expiry
        except Exception:
            logger.exception("Error getting subscription expiry for user %s", user_id)
            return None

    async def get_days_until_expiry(self, user_id: str, use_cache: bool = True) -> Optional[int]:
        try:
            expiry = await self.get_subscription_expiry(user_id, use_cache)
            if expiry is None:
                return None
            remaining = (expiry - self._clock()).total_seconds()
            return math.ceil(remaining / _SECONDS_PER_DAY)
        except Exception:
            logger.exception("Error calculating days until expiry for user %s", user_id)
            return None

    async def is_subscription_expiring_soon(
        self, user_id: str, within_days: int = 7, use_cache: bool = True
    ) -> bool:
        days = await self.get_days_until_expiry(user_id, use_cache)
        if days is None:
            return False
        return 0 < days <= within_days

    async def get_secure_membership_tier(self, user_id: str) -> SubscriptionTier:
        status = await self.get_subscription_status(user_id, use_cache=True)
        logger.debug(
            "Secure membership tier for user %s: tier=%s active=%s valid=%s source=%s",
            user_id,
            status.current_tier.value,
            status.has_active_subscription,
            status.is_valid,
            status.validation_source.value,
        )
        return status.current_tier

    async def has_privileged_access(self, user_id: str) -> bool:
        return await self.has_required_tier(user_id, SubscriptionTier.PRIVILEGED)

    async def has_privileged_plus_access(self, user_id: str) -> bool:
        return await self.has_required_tier(user_id, SubscriptionTier.PRIVILEGED_PLUS)

    async def validate_membership_consistency(self, user_id: str) -> MembershipConsistency:
        """Compare the tier stored on the user row with the validated tier."""

        try:
            stored_raw = await self.repository.fetch_stored_membership_tier(user_id)
        except Exception:
            logger.exception("Error loading stored membership tier for user %s", user_id)
            return MembershipConsistency(
                is_consistent=False,
                stored_tier=SubscriptionTier.MEMBER,
                validated_tier=SubscriptionTier.MEMBER,
                needs_update=False,
            )

        stored_tier = SubscriptionTier.parse(stored_raw)
        validated_tier = await self.get_secure_membership_tier(user_id)
        consistent = stored_tier == validated_tier
        if not consistent:
            logger.warning(
                "Tier mismatch for user %s: stored=%s validated=%s",
                user_id,
                stored_tier.value,
                validated_tier.value,
            )
        return MembershipConsistency(
            is_consistent=consistent,
            stored_tier=stored_tier,
            validated_tier=validated_tier,
            needs_update=not consistent,
        )

    async def batch_validate(
        self,
        user_ids: Sequence[str],
        options: Optional[ValidationOptions] = None,
        batch_config: Optional[BatchConfig] = None,
    ) -> List[ValidationResult]:
        return await self.batch_validator.batch_validate(user_ids, options, batch_config)

    # Cache administration

    def invalidate_user_cache(self, user_id: str) -> bool:
        return self.invalidator.invalidate_user(user_id)

    def invalidate_multiple_user_cache(self, user_ids: Sequence[str]) -> BatchInvalidationResult:
        return self.invalidator.invalidate_multiple_users(user_ids)

    def invalidate_on_subscription_event(
        self, user_id: str, change_type: SubscriptionChangeType | str
    ) -> bool:
        return self.invalidator.invalidate_on_event(user_id, change_type)

    async def warm_subscription_cache(self, user_ids: Sequence[str]) -> CacheWarmingResult:
        return await self.warmer.warm_subscription_cache(user_ids)

    async def warm_frequent_user_cache(
        self, *, limit: int = 50, respect_feature_flags: bool = True
    ) -> CacheWarmingResult:
        try:
            return await self.warmer.warm_frequent_user_cache(
                limit=limit, respect_feature_flags=respect_feature_flags
            )
        except Exception:
            logger.exception("Error during intelligent cache warming")
            return CacheWarmingResult()

    def perform_cache_maintenance(self, proactive: bool = True) -> CacheMaintenanceResult:
        """Sweep the cache; ``proactive=False`` only drops already-expired entries."""

        removed = self.cache.sweep() if proactive else self.cache.cleanup_expired()
        stats = self.cache.get_stats()
        return CacheMaintenanceResult(
            expired_removed=removed,
            total_entries=len(self.cache),
            hit_rate=stats.hit_rate,
        )

    def clear_subscription_cache(self) -> None:
        self.cache.clear()
        logger.info("All subscription cache cleared")

    def get_cache_stats(self) -> Dict[str, Any]:
        return {**self.cache.get_stats().to_dict(), "info": self.cache.get_info()}

    def get_enhanced_cache_stats(self) -> Dict[str, Any]:
        return self.cache.performance_monitor.get_enhanced_stats()

    def generate_performance_report(self, send_to_backend: bool = False) -> Dict[str, Any]:
        return self.cache.performance_monitor.generate_performance_report(
            self.metrics if send_to_backend else None,
            monitoring_enabled=self.flags.performance_monitoring,
        )

    # Lifecycle

    def start(self) -> None:
        """Start background work on the running event loop."""

        self.cache.start()
        loop = asyncio.get_running_loop()
        if self.metrics is not None and self.metrics.enabled:
            self._tasks.append(loop.create_task(self.metrics.run()))
        if self._warming_interval and self.flags.cache_warming:
            self._tasks.append(
                loop.create_task(
                    self._every(self._warming_interval, self.warm_frequent_user_cache)
                )
            )
        if self._report_interval and self.flags.performance_monitoring:
            self._tasks.append(
                loop.create_task(self._every(self._report_interval, self._send_report))
            )

    async def close(self) -> None:
        if self.metrics is not None:
            self.metrics.close()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        if self.metrics is not None:
            await self.metrics.flush()
        await self.cache.aclose()

    async def _send_report(self) -> None:
        self.generate_performance_report(send_to_backend=True)

    async def _every(self, interval: float, job: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:  # pragma: no cover
                logger.exception("Periodic subscription job failed")


def build_subscription_service(
    settings: SubscriptionSettings,
    repository: SubscriptionRepository,
    *,
    metrics_sink: Optional[SubscriptionMetricsSink] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> SubscriptionService:
    """Wire a :class:`SubscriptionService` from resolved settings."""

    flags = settings.flags
    metrics = SubscriptionMetricsQueue(metrics_sink, enabled=metrics_sink is not None)
    monitor = CachePerformanceMonitor(clock=clock)
    cache = SubscriptionCache(
        settings.cache,
        monitor=monitor,
        clock=clock,
        cleanup_interval=settings.cleanup_interval,
    )
    validator = SubscriptionValidator(
        repository, clock=clock, consolidated_enabled=flags.consolidated_validation
    )
    return SubscriptionService(
        repository=repository,
        validator=validator,
        cache=cache,
        invalidator=CacheInvalidator(
            cache, enhanced=flags.enhanced_invalidation, metrics=metrics
        ),
        warmer=CacheWarmer(
            cache, validator, repository, enabled=flags.cache_warming, clock=clock
        ),
        batch_validator=BatchValidator(validator, clock=clock),
        metrics=metrics,
        flags=flags,
        default_timeout=settings.validation_timeout,
        warming_interval=settings.warming_interval,
        report_interval=settings.report_interval,
        clock=clock,
    )
