from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from booktalks.app.subscriptions import (
    SubscriptionTier,
    SubscriptionValidator,
    ValidationOptions,
    ValidationSource,
)
from booktalks.app.subscriptions.validation import ValidationStrategy, plan_strategies


EXPIRY = datetime(2025, 6, 1, tzinfo=timezone.utc)


def test_plan_strategies_respects_consolidated_flag():
    assert plan_strategies(True) == (ValidationStrategy.CONSOLIDATED, ValidationStrategy.LEGACY)
    assert plan_strategies(False) == (ValidationStrategy.LEGACY,)


@pytest.mark.asyncio
async def test_consolidated_validation_uses_single_query(repository, clock):
    repository.add_subscription("user-1", "PRIVILEGED", EXPIRY)
    validator = SubscriptionValidator(repository, clock=clock)

    result = await validator.validate("user-1")

    assert result.success is True
    assert result.strategy == "consolidated"
    assert result.query_count == 1
    assert result.errors == ()
    assert result.status.has_active_subscription is True
    assert result.status.current_tier == SubscriptionTier.PRIVILEGED
    assert result.status.subscription_expiry == EXPIRY
    assert result.status.is_valid is True
    assert result.status.validation_source == ValidationSource.CONSOLIDATED_QUERY
    assert result.performance_metrics is not None
    assert result.performance_metrics.query_count == 1


@pytest.mark.asyncio
async def test_user_without_subscription_is_member(repository, clock):
    validator = SubscriptionValidator(repository, clock=clock)

    result = await validator.validate("nobody")

    assert result.success is True
    assert result.status.has_active_subscription is False
    assert result.status.current_tier == SubscriptionTier.MEMBER
    assert result.status.is_valid is False


@pytest.mark.asyncio
async def test_stored_tier_mismatch_is_reported_as_warning(repository, clock):
    repository.add_subscription("user-1", "PRIVILEGED_PLUS", EXPIRY, membership_tier="MEMBER")
    validator = SubscriptionValidator(repository, clock=clock)

    result = await validator.validate("user-1")

    assert result.success is True
    assert result.status.current_tier == SubscriptionTier.PRIVILEGED_PLUS
    assert result.error_codes() == ("MEMBERSHIP_TIER_MISMATCH",)
    assert len(result.status.warnings) == 1


@pytest.mark.asyncio
async def test_falls_back_to_legacy_when_consolidated_query_fails(repository, clock):
    repository.add_subscription("user-1", "PRIVILEGED", EXPIRY)
    repository.failures["fetch_consolidated_subscription"] = RuntimeError("relation missing")
    validator = SubscriptionValidator(repository, clock=clock)

    result = await validator.validate("user-1")

    assert result.success is True
    assert result.strategy == "legacy"
    assert result.query_count == 4
    assert "CONSOLIDATED_VALIDATION_FAILED" in result.error_codes()
    assert result.status.validation_source == ValidationSource.LEGACY
    assert result.status.current_tier == SubscriptionTier.PRIVILEGED
    assert result.status.is_valid is True


@pytest.mark.asyncio
async def test_legacy_only_when_consolidated_disabled(repository, clock):
    repository.add_subscription("user-1", "PRIVILEGED", EXPIRY)
    validator = SubscriptionValidator(repository, clock=clock, consolidated_enabled=False)

    result = await validator.validate("user-1")

    assert result.strategy == "legacy"
    assert result.query_count == 3
    assert repository.call_count("fetch_consolidated_subscription") == 0


@pytest.mark.asyncio
async def test_legacy_failure_fails_secure(repository, clock):
    repository.add_subscription("user-1", "PRIVILEGED_PLUS", EXPIRY)
    repository.failures["fetch_consolidated_subscription"] = RuntimeError("down")
    repository.failures["has_active_subscription"] = RuntimeError("down")
    validator = SubscriptionValidator(repository, clock=clock)

    result = await validator.validate("user-1")

    assert result.success is False
    assert result.strategy == "fail_secure"
    assert result.query_count == 2
    assert result.error_codes() == (
        "CONSOLIDATED_VALIDATION_FAILED",
        "ACTIVE_SUBSCRIPTION_CHECK_FAILED",
    )
    assert result.status.current_tier == SubscriptionTier.MEMBER
    assert result.status.has_active_subscription is False
    assert result.status.validation_source == ValidationSource.FALLBACK
    assert result.status.warnings == (
        "Unable to verify active subscription - defaulting to MEMBER tier for security",
    )


@pytest.mark.asyncio
async def test_legacy_tier_lookup_failure_fails_secure(repository, clock):
    repository.add_subscription("user-1", "PRIVILEGED", EXPIRY)
    repository.failures["get_user_subscription_tier"] = RuntimeError("rpc error")
    validator = SubscriptionValidator(repository, clock=clock, consolidated_enabled=False)

    result = await validator.validate("user-1")

    assert result.success is False
    assert result.query_count == 2
    assert result.error_codes() == ("SUBSCRIPTION_TIER_CHECK_FAILED",)
    assert result.status.current_tier == SubscriptionTier.MEMBER


@pytest.mark.asyncio
async def test_active_flag_with_past_expiry_is_not_valid(repository, clock):
    repository.add_subscription("user-1", "PRIVILEGED", clock.now - timedelta(days=1))
    validator = SubscriptionValidator(repository, clock=clock, consolidated_enabled=False)

    result = await validator.validate("user-1")

    assert result.success is True
    assert result.status.has_active_subscription is True
    assert result.status.is_valid is False
    assert result.error_codes() == ("SUBSCRIPTION_EXPIRED",)
    assert result.status.warnings == (
        "User has active subscription flag but subscription is expired",
    )


@pytest.mark.asyncio
async def test_validation_timeout_fails_secure(repository, clock):
    repository.add_subscription("user-1", "PRIVILEGED", EXPIRY)
    repository.delay = 1.0
    validator = SubscriptionValidator(repository, clock=clock)

    result = await validator.validate("user-1", ValidationOptions(timeout=0.05))

    assert result.success is False
    assert result.strategy == "fail_secure"
    assert "TIMEOUT_ERROR" in result.error_codes()
    assert result.status.current_tier == SubscriptionTier.MEMBER
    assert result.status.warnings[0].startswith("Subscription validation timed out")


@pytest.mark.asyncio
async def test_metrics_are_optional(repository, clock):
    validator = SubscriptionValidator(repository, clock=clock)

    result = await validator.validate("user-1", ValidationOptions(include_metrics=False))

    assert result.performance_metrics is None


@pytest.mark.asyncio
async def test_has_active_subscription_answers_false_on_error(repository, clock):
    repository.failures["has_active_subscription"] = RuntimeError("down")
    validator = SubscriptionValidator(repository, clock=clock)

    assert await validator.has_active_subscription("user-1") is False
