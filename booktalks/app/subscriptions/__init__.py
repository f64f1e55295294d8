"""Subscription status validation, caching and invalidation."""

from .batch import BatchValidator, optimize_batch_config
from .cache import SubscriptionCache
from .config import SubscriptionFeatureFlags, SubscriptionSettings, load_subscription_settings
from .errors import (
    FailSecureReason,
    ValidationErrorCode,
    create_fail_secure_status,
    create_validation_error,
    should_fail_secure,
)
from .invalidation import CacheInvalidator, SubscriptionChangeType
from .metrics import PostgresMetricsSink, SubscriptionMetricsQueue
from .models import (
    BatchConfig,
    CacheConfig,
    CacheStats,
    CacheWarmingResult,
    ErrorSeverity,
    SubscriptionStatus,
    SubscriptionTier,
    SystemLoad,
    ValidationOptions,
    ValidationResult,
    ValidationSource,
)
from .performance import CachePerformanceMonitor, calculate_cache_efficiency
from .repository import PostgresSubscriptionRepository, SubscriptionRepository
from .service import SubscriptionService, build_subscription_service
from .validation import SubscriptionValidator
from .warming import CacheWarmer

__all__ = [
    "BatchConfig",
    "BatchValidator",
    "CacheConfig",
    "CacheInvalidator",
    "CachePerformanceMonitor",
    "CacheStats",
    "CacheWarmer",
    "CacheWarmingResult",
    "ErrorSeverity",
    "FailSecureReason",
    "PostgresMetricsSink",
    "PostgresSubscriptionRepository",
    "SubscriptionCache",
    "SubscriptionChangeType",
    "SubscriptionFeatureFlags",
    "SubscriptionMetricsQueue",
    "SubscriptionRepository",
    "SubscriptionService",
    "SubscriptionSettings",
    "SubscriptionStatus",
    "SubscriptionTier",
    "SubscriptionValidator",
    "SystemLoad",
    "ValidationErrorCode",
    "ValidationOptions",
    "ValidationResult",
    "ValidationSource",
    "build_subscription_service",
    "calculate_cache_efficiency",
    "create_fail_secure_status",
    "create_validation_error",
    "optimize_batch_config",
    "load_subscription_settings",
    "should_fail_secure",
]
