"""Domain models for subscription status validation and caching."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MIN_CACHE_TTL = 60
MIN_INTELLIGENT_TTL = 10
MAX_VALIDATION_TIMEOUT = 10.0
DEFAULT_VALIDATION_TIMEOUT = 5.0


class SubscriptionTier(str, Enum):
    """Membership tiers ordered from least to most privileged."""

    MEMBER = "MEMBER"
    PRIVILEGED = "PRIVILEGED"
    PRIVILEGED_PLUS = "PRIVILEGED_PLUS"

    @property
    def rank(self) -> int:
        return _TIER_RANKS[self]

    def at_least(self, required: "SubscriptionTier") -> bool:
        return self.rank >= required.rank

    @classmethod
    def parse(cls, raw: Optional[object]) -> "SubscriptionTier":
        """Map a raw backend tier value onto the enum, defaulting to MEMBER."""

        if isinstance(raw, SubscriptionTier):
            return raw
        if not isinstance(raw, str):
            return cls.MEMBER
        normalized = raw.strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError:
            return cls.MEMBER


_TIER_RANKS: Dict[SubscriptionTier, int] = {
    SubscriptionTier.MEMBER: 1,
    SubscriptionTier.PRIVILEGED: 2,
    SubscriptionTier.PRIVILEGED_PLUS: 3,
}


class ValidationSource(str, Enum):
    """Where a subscription status answer came from."""

    DATABASE = "database"
    CACHE = "cache"
    CONSOLIDATED_QUERY = "consolidated_query"
    LEGACY = "legacy"
    FALLBACK = "fallback"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CacheOperationResult(str, Enum):
    HIT = "hit"
    MISS = "miss"
    EXPIRED = "expired"
    ERROR = "error"
    STORED = "stored"


class SystemLoad(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionStatus(BaseModel):
    """Resolved subscription state for a single user."""

    has_active_subscription: bool = Field(alias="hasActiveSubscription")
    current_tier: SubscriptionTier = Field(alias="currentTier", default=SubscriptionTier.MEMBER)
    subscription_expiry: Optional[datetime] = Field(alias="subscriptionExpiry", default=None)
    is_valid: bool = Field(alias="isValid", default=False)
    last_validated: datetime = Field(alias="lastValidated", default_factory=_utcnow)
    validation_source: ValidationSource = Field(alias="validationSource")
    warnings: Tuple[str, ...] = Field(default_factory=tuple)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("subscription_expiry", "last_validated")
    @classmethod
    def _normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)

    @model_validator(mode="after")
    def _inactive_is_never_valid(self) -> "SubscriptionStatus":
        if self.is_valid and not self.has_active_subscription:
            raise ValueError("is_valid requires an active subscription")
        return self

    def is_expired(self, now: datetime) -> bool:
        if self.subscription_expiry is None:
            return False
        return self.subscription_expiry <= now

    def is_currently_valid(self, now: datetime) -> bool:
        """Validity re-checked against the clock; a past expiry always loses."""

        return self.is_valid and self.has_active_subscription and not self.is_expired(now)


class SubscriptionValidationError(BaseModel):
    """Structured record of a problem encountered while validating."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    model_config = ConfigDict(frozen=True)


class ValidationPerformanceMetrics(BaseModel):
    query_time_ms: float = Field(alias="queryTime", default=0.0)
    cache_hit: bool = Field(alias="cacheHit", default=False)
    query_count: int = Field(alias="queryCount", default=0)
    start_time: datetime = Field(alias="startTime")
    end_time: datetime = Field(alias="endTime")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ValidationResult(BaseModel):
    """Outcome of validating one user's subscription against the backend."""

    user_id: str = Field(alias="userId")
    status: SubscriptionStatus
    errors: Tuple[SubscriptionValidationError, ...] = Field(default_factory=tuple)
    query_count: int = Field(alias="queryCount", default=0)
    success: bool = False
    strategy: Optional[str] = None
    performance_metrics: Optional[ValidationPerformanceMetrics] = Field(
        alias="performanceMetrics", default=None
    )

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def error_codes(self) -> Tuple[str, ...]:
        return tuple(error.code for error in self.errors)


class ValidationOptions(BaseModel):
    use_cache: bool = True
    timeout: Optional[float] = DEFAULT_VALIDATION_TIMEOUT
    force_refresh: bool = False
    include_metrics: bool = True

    model_config = ConfigDict(frozen=True)

    @field_validator("timeout")
    @classmethod
    def _clamp_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is None:
            return None
        if value <= 0:
            raise ValueError("timeout must be positive")
        return min(value, MAX_VALIDATION_TIMEOUT)


class CacheConfig(BaseModel):
    """Tunables for the in-memory subscription cache."""

    ttl: int = 300
    max_entries: int = 10_000
    compression: bool = True
    key_prefix: str = "subscription:"
    min_ttl: int = MIN_INTELLIGENT_TTL

    model_config = ConfigDict(frozen=True)

    @field_validator("ttl")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value < MIN_CACHE_TTL:
            raise ValueError(f"ttl must be >= {MIN_CACHE_TTL} seconds")
        return value

    @field_validator("max_entries", "min_ttl")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value


@dataclass(frozen=True)
class BatchConfig:
    batch_size: int = 10
    batch_delay: float = 0.1
    max_concurrency: int = 5
    continue_on_error: bool = True

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.batch_delay < 0:
            raise ValueError("batch_delay must be >= 0")


@dataclass
class CacheEntry:
    """Cached status plus the bookkeeping the cache needs to expire and evict it."""

    data: SubscriptionStatus
    timestamp: datetime
    expires_at: datetime
    subscription_expiry: Optional[datetime]
    user_id: str
    access_count: int = 0
    last_accessed: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.last_accessed is None:
            self.last_accessed = self.timestamp

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at <= now:
            return True
        return self.subscription_expiry is not None and self.subscription_expiry <= now

    def touch(self, now: datetime) -> None:
        self.access_count += 1
        self.last_accessed = now


@dataclass(frozen=True)
class CacheLookup:
    data: Optional[SubscriptionStatus]
    result: CacheOperationResult

    @property
    def is_hit(self) -> bool:
        return self.result == CacheOperationResult.HIT and self.data is not None


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    total_requests: int = 0
    hit_rate: float = 0.0
    average_response_time: float = 0.0

    def to_dict(self) -> Dict[str, float | int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "totalRequests": self.total_requests,
            "hitRate": self.hit_rate,
            "averageResponseTime": self.average_response_time,
        }


@dataclass(frozen=True)
class CacheEfficiency:
    score: int
    recommendation: str


@dataclass(frozen=True)
class CacheWarmingResult:
    warmed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: float = 0.0


@dataclass(frozen=True)
class BatchInvalidationResult:
    invalidated: int = 0
    failed: int = 0


@dataclass(frozen=True)
class CacheMaintenanceResult:
    expired_removed: int
    total_entries: int
    hit_rate: float


@dataclass(frozen=True)
class MembershipConsistency:
    is_consistent: bool
    stored_tier: SubscriptionTier
    validated_tier: SubscriptionTier
    needs_update: bool


class ConsolidatedSubscriptionRow(BaseModel):
    """Row produced by the single joined subscription lookup."""

    user_id: str
    tier: Optional[str] = None
    is_active: bool = True
    end_date: datetime
    subscription_type: Optional[str] = None
    membership_tier: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("user_id", mode="before")
    @classmethod
    def _stringify_user_id(cls, value: object) -> str:
        return str(value)

    @field_validator("end_date")
    @classmethod
    def _normalize_end_date(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class SubscriptionDetails(BaseModel):
    end_date: Optional[datetime] = None
    tier: Optional[str] = None
    subscription_type: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("end_date")
    @classmethod
    def _normalize_end_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


@dataclass(frozen=True)
class ActivitySignal:
    """A timestamped hint that a user has been active recently."""

    user_id: str
    occurred_at: datetime


@dataclass(frozen=True)
class MetricEvent:
    metric_type: str
    source: str
    user_id: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)
