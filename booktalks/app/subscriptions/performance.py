"""Hit/miss accounting and efficiency heuristics for the subscription cache."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .metrics import SubscriptionMetricsQueue
from .models import CacheEfficiency, CacheStats

logger = logging.getLogger(__name__)


class InvalidationKind(str, Enum):
    SUBSCRIPTION = "subscription"
    EXPIRY = "expiry"
    MANUAL = "manual"


@dataclass
class WarmingStats:
    total_warming_operations: int = 0
    successful_warmings: int = 0
    failed_warmings: int = 0
    average_warming_time: float = 0.0


@dataclass
class InvalidationStats:
    total_invalidations: int = 0
    subscription_based_invalidations: int = 0
    expiry_based_invalidations: int = 0
    manual_invalidations: int = 0


def calculate_cache_efficiency(stats: CacheStats) -> CacheEfficiency:
    """Score cache health from 0 to 100 and suggest the most pressing fix.

    Hit rate carries 60 points, response time 25 (one point lost per 10 ms)
    and eviction rate 15 (one point lost per percent of requests evicted).
    """

    if stats.total_requests == 0:
        return CacheEfficiency(score=0, recommendation="No cache activity recorded")

    hit_rate_score = stats.hit_rate * 60
    response_time_score = max(0.0, 25 - stats.average_response_time / 10)
    eviction_rate = stats.evictions / stats.total_requests
    eviction_score = max(0.0, 15 - eviction_rate * 100)
    score = round(hit_rate_score + response_time_score + eviction_score)

    if stats.hit_rate < 0.7:
        recommendation = "Consider increasing cache TTL or cache size"
    elif stats.average_response_time > 50:
        recommendation = "Cache operations are slow - consider optimization"
    elif eviction_rate > 0.1:
        recommendation = "High eviction rate - consider increasing cache size"
    else:
        recommendation = "Cache performance is optimal"

    return CacheEfficiency(score=score, recommendation=recommendation)


class CachePerformanceMonitor:
    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stats = CacheStats()
        self._warming = WarmingStats()
        self._invalidation = InvalidationStats()
        self.last_report_time = self._clock()

    def record_hit(self, response_time_ms: float) -> None:
        self._stats.hits += 1
        self._record_request(response_time_ms)

    def record_miss(self, response_time_ms: float) -> None:
        self._stats.misses += 1
        self._record_request(response_time_ms)

    def record_eviction(self) -> None:
        self._stats.evictions += 1

    def record_warming(self, duration_ms: float, success: bool) -> None:
        warming = self._warming
        warming.total_warming_operations += 1
        if success:
            warming.successful_warmings += 1
        else:
            warming.failed_warmings += 1
        count = warming.total_warming_operations
        warming.average_warming_time = (
            warming.average_warming_time * (count - 1) + duration_ms
        ) / count

    def record_invalidation(self, kind: InvalidationKind) -> None:
        self._invalidation.total_invalidations += 1
        if kind == InvalidationKind.SUBSCRIPTION:
            self._invalidation.subscription_based_invalidations += 1
        elif kind == InvalidationKind.EXPIRY:
            self._invalidation.expiry_based_invalidations += 1
        else:
            self._invalidation.manual_invalidations += 1

    def get_stats(self) -> CacheStats:
        return replace(self._stats)

    @property
    def warming(self) -> WarmingStats:
        return replace(self._warming)

    @property
    def invalidation(self) -> InvalidationStats:
        return replace(self._invalidation)

    def get_enhanced_stats(self) -> Dict[str, Any]:
        efficiency = calculate_cache_efficiency(self._stats)
        return {
            **self._stats.to_dict(),
            "warming": asdict(self._warming),
            "invalidation": asdict(self._invalidation),
            "efficiency": asdict(efficiency),
        }

    def reset_stats(self) -> None:
        self._stats = CacheStats()
        self._warming = WarmingStats()
        self._invalidation = InvalidationStats()
        self.last_report_time = self._clock()

    def generate_recommendations(self) -> List[str]:
        recommendations: List[str] = []
        if self._stats.hit_rate < 0.85:
            recommendations.append(
                "Consider implementing intelligent cache warming to improve hit rate"
            )
        if self._stats.average_response_time > 100:
            recommendations.append("Cache operations are slow - consider query optimization")
        if self._warming.total_warming_operations:
            success_rate = self._warming.successful_warmings / self._warming.total_warming_operations
            if success_rate < 0.9:
                recommendations.append(
                    "Cache warming has high failure rate - investigate user identification logic"
                )
        if self._invalidation.total_invalidations:
            subscription_share = (
                self._invalidation.subscription_based_invalidations
                / self._invalidation.total_invalidations
            )
            if subscription_share < 0.5:
                recommendations.append(
                    "Most invalidations are not subscription-based - consider improving"
                    " subscription event tracking"
                )
        return recommendations

    def generate_performance_report(
        self,
        metrics: Optional[SubscriptionMetricsQueue] = None,
        *,
        monitoring_enabled: bool = False,
    ) -> Dict[str, Any]:
        """Summarize current counters; optionally queue the report for the metrics backend."""

        now = self._clock()
        report: Dict[str, Any] = {
            "timestamp": now.isoformat(),
            "stats": self._stats.to_dict(),
            "warming": asdict(self._warming),
            "invalidation": asdict(self._invalidation),
            "efficiency": asdict(calculate_cache_efficiency(self._stats)),
            "recommendations": self.generate_recommendations(),
        }
        if metrics is not None and monitoring_enabled:
            metrics.emit(
                "cache_performance",
                source="cache_performance_monitor",
                data={
                    "cache_stats": report["stats"],
                    "warming_stats": report["warming"],
                    "invalidation_stats": report["invalidation"],
                    "efficiency": report["efficiency"],
                    "recommendations": report["recommendations"],
                    "report_timestamp": report["timestamp"],
                },
            )
            logger.debug("Queued cache performance report generated at %s", report["timestamp"])
        self.last_report_time = now
        return report

    def _record_request(self, response_time_ms: float) -> None:
        stats = self._stats
        stats.total_requests += 1
        stats.average_response_time = (
            stats.average_response_time * (stats.total_requests - 1) + response_time_ms
        ) / stats.total_requests
        stats.hit_rate = stats.hits / stats.total_requests
