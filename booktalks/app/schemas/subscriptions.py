"""API schemas for subscription status endpoints."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..subscriptions import (
    CacheWarmingResult,
    SubscriptionChangeType,
    SubscriptionStatus,
    SubscriptionTier,
)


class SubscriptionStatusResponse(BaseModel):
    user_id: str = Field(alias="userId")
    status: SubscriptionStatus

    model_config = ConfigDict(populate_by_name=True)


class TierCheckResponse(BaseModel):
    user_id: str = Field(alias="userId")
    required_tier: SubscriptionTier = Field(alias="requiredTier")
    has_access: bool = Field(alias="hasAccess")

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionEventRequest(BaseModel):
    user_id: str = Field(alias="userId", min_length=1)
    change_type: SubscriptionChangeType = Field(alias="changeType")

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionEventResponse(BaseModel):
    user_id: str = Field(alias="userId")
    invalidated: bool

    model_config = ConfigDict(populate_by_name=True)


class CacheStatsResponse(BaseModel):
    stats: Dict[str, Any]
    enhanced: Dict[str, Any]


class CacheWarmRequest(BaseModel):
    user_ids: Optional[List[str]] = Field(alias="userIds", default=None)
    limit: int = Field(default=50, ge=1, le=500)

    model_config = ConfigDict(populate_by_name=True)


class CacheWarmResponse(BaseModel):
    warmed: int
    failed: int
    skipped: int
    duration_ms: float = Field(alias="durationMs")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: CacheWarmingResult) -> "CacheWarmResponse":
        return cls(
            warmed=result.warmed,
            failed=result.failed,
            skipped=result.skipped,
            duration_ms=result.duration_ms,
        )
