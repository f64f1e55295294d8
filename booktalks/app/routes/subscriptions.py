"""API routes exposing subscription status checks and cache administration."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from ..schemas.subscriptions import (
    CacheStatsResponse,
    CacheWarmRequest,
    CacheWarmResponse,
    SubscriptionEventRequest,
    SubscriptionEventResponse,
    SubscriptionStatusResponse,
    TierCheckResponse,
)
from ..subscriptions import SubscriptionService, SubscriptionTier


def get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription service is not available",
        )
    return service


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.get("/cache/stats", response_model=CacheStatsResponse)
def get_cache_stats(
    *,
    service: SubscriptionService = Depends(get_subscription_service),
) -> CacheStatsResponse:
    return CacheStatsResponse(
        stats=service.get_cache_stats(),
        enhanced=service.get_enhanced_cache_stats(),
    )


@router.post("/cache/clear", status_code=status.HTTP_204_NO_CONTENT)
def clear_cache(
    *,
    service: SubscriptionService = Depends(get_subscription_service),
) -> Response:
    service.clear_subscription_cache()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/cache/warm", response_model=CacheWarmResponse)
async def warm_cache(
    payload: CacheWarmRequest,
    *,
    service: SubscriptionService = Depends(get_subscription_service),
) -> CacheWarmResponse:
    """Warm explicit users, or the most active users when none are given."""

    if payload.user_ids:
        result = await service.warm_subscription_cache(payload.user_ids)
    else:
        result = await service.warm_frequent_user_cache(limit=payload.limit)
    return CacheWarmResponse.from_result(result)


@router.post("/events", response_model=SubscriptionEventResponse)
def receive_subscription_event(
    payload: SubscriptionEventRequest,
    *,
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionEventResponse:
    invalidated = service.invalidate_on_subscription_event(payload.user_id, payload.change_type)
    return SubscriptionEventResponse(user_id=payload.user_id, invalidated=invalidated)


@router.get("/{user_id}/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    user_id: str,
    *,
    refresh: bool = False,
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionStatusResponse:
    subscription_status = await service.get_subscription_status(user_id, force_refresh=refresh)
    return SubscriptionStatusResponse(user_id=user_id, status=subscription_status)


@router.get("/{user_id}/tier-check", response_model=TierCheckResponse)
async def check_tier(
    user_id: str,
    *,
    required_tier: str = Query(alias="requiredTier"),
    service: SubscriptionService = Depends(get_subscription_service),
) -> TierCheckResponse:
    try:
        required = SubscriptionTier(required_tier.strip().upper())
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown subscription tier: {required_tier}",
        ) from exc

    has_access = await service.has_required_tier(user_id, required)
    return TierCheckResponse(user_id=user_id, required_tier=required, has_access=has_access)
