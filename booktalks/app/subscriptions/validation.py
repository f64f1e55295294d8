"""Single-user subscription validation against the backend."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .errors import (
    FailSecureReason,
    ValidationErrorCode,
    create_fail_secure_status,
    create_validation_error,
    should_fail_secure,
    warnings_from,
)
from .models import (
    ErrorSeverity,
    SubscriptionStatus,
    SubscriptionTier,
    SubscriptionValidationError,
    ValidationOptions,
    ValidationPerformanceMetrics,
    ValidationResult,
    ValidationSource,
)
from .repository import SubscriptionRepository

logger = logging.getLogger(__name__)


class ValidationStrategy(str, Enum):
    CONSOLIDATED = "consolidated"
    LEGACY = "legacy"
    FAIL_SECURE = "fail_secure"


def plan_strategies(consolidated_enabled: bool) -> Tuple[ValidationStrategy, ...]:
    """Ordered strategies to attempt; legacy is always the last resort."""

    if consolidated_enabled:
        return (ValidationStrategy.CONSOLIDATED, ValidationStrategy.LEGACY)
    return (ValidationStrategy.LEGACY,)


@dataclass
class StrategyOutcome:
    strategy: ValidationStrategy
    success: bool
    query_count: int
    status: Optional[SubscriptionStatus] = None
    errors: List[SubscriptionValidationError] = field(default_factory=list)
    fail_reason: Optional[FailSecureReason] = None


@dataclass
class _ValidationState:
    query_count: int = 0
    errors: List[SubscriptionValidationError] = field(default_factory=list)
    status: Optional[SubscriptionStatus] = None
    success: bool = False
    strategy: Optional[ValidationStrategy] = None


class SubscriptionValidator:
    """Resolves a user's subscription status, failing closed on any doubt."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        consolidated_enabled: bool = True,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._strategies = plan_strategies(consolidated_enabled)

    @property
    def strategies(self) -> Tuple[ValidationStrategy, ...]:
        return self._strategies

    async def validate(
        self, user_id: str, options: Optional[ValidationOptions] = None
    ) -> ValidationResult:
        options = options or ValidationOptions()
        start_time = self._clock()
        started = time.perf_counter()
        state = _ValidationState()

        try:
            if options.timeout is not None:
                await asyncio.wait_for(self._orchestrate(user_id, state), options.timeout)
            else:
                await self._orchestrate(user_id, state)
        except asyncio.TimeoutError:
            logger.warning(
                "Subscription validation for user %s timed out after %ss", user_id, options.timeout
            )
            state.errors.append(
                create_validation_error(
                    ValidationErrorCode.TIMEOUT_ERROR,
                    f"Validation did not complete within {options.timeout}s",
                    {"user_id": user_id, "timeout": options.timeout},
                    ErrorSeverity.CRITICAL,
                    clock=self._clock,
                )
            )
            self._fail_secure(user_id, state, FailSecureReason.VALIDATION_TIMEOUT)
        except Exception as exc:
            logger.exception("Unexpected error in validation orchestration for user %s", user_id)
            state.errors.append(
                create_validation_error(
                    ValidationErrorCode.UNEXPECTED_VALIDATION_ERROR,
                    f"Validation failed unexpectedly: {exc}",
                    {"user_id": user_id, "error": repr(exc)},
                    ErrorSeverity.CRITICAL,
                    clock=self._clock,
                )
            )
            self._fail_secure(user_id, state, FailSecureReason.VALIDATION_ORCHESTRATION_ERROR)

        if state.status is None:  # pragma: no cover - orchestration always sets a status
            self._fail_secure(user_id, state, FailSecureReason.VALIDATION_ORCHESTRATION_ERROR)

        metrics = None
        if options.include_metrics:
            metrics = ValidationPerformanceMetrics(
                query_time_ms=(time.perf_counter() - started) * 1000,
                cache_hit=False,
                query_count=state.query_count,
                start_time=start_time,
                end_time=self._clock(),
            )

        return ValidationResult(
            user_id=user_id,
            status=state.status,
            errors=tuple(state.errors),
            query_count=state.query_count,
            success=state.success,
            strategy=state.strategy.value if state.strategy else None,
            performance_metrics=metrics,
        )

    async def has_active_subscription(self, user_id: str) -> bool:
        """Single-query active check; any failure answers ``False``."""

        try:
            return bool(await self._repository.has_active_subscription(user_id))
        except Exception:
            logger.exception("Active subscription check failed for user %s", user_id)
            return False

    async def _orchestrate(self, user_id: str, state: _ValidationState) -> None:
        for strategy in self._strategies:
            outcome = await self._run_strategy(strategy, user_id)
            state.query_count += outcome.query_count
            state.errors.extend(outcome.errors)
            state.strategy = strategy

            if outcome.success and not should_fail_secure(outcome.errors):
                state.status = outcome.status
                state.success = True
                logger.debug(
                    "Validated user %s using %s with %s queries",
                    user_id,
                    strategy.value,
                    state.query_count,
                )
                return

            if strategy == ValidationStrategy.CONSOLIDATED:
                logger.warning(
                    "Consolidated validation failed for user %s, falling back to legacy", user_id
                )
                continue

            self._fail_secure(
                user_id,
                state,
                outcome.fail_reason or FailSecureReason.VALIDATION_ORCHESTRATION_ERROR,
            )
            return

    async def _run_strategy(self, strategy: ValidationStrategy, user_id: str) -> StrategyOutcome:
        if strategy == ValidationStrategy.CONSOLIDATED:
            return await self._consolidated(user_id)
        return await self._legacy(user_id)

    async def _consolidated(self, user_id: str) -> StrategyOutcome:
        now = self._clock()
        try:
            row = await self._repository.fetch_consolidated_subscription(user_id, now)
        except Exception as exc:
            logger.warning("Consolidated validation query failed for user %s: %s", user_id, exc)
            error = create_validation_error(
                ValidationErrorCode.CONSOLIDATED_VALIDATION_FAILED,
                f"Consolidated validation query failed: {exc}",
                {"user_id": user_id, "error": repr(exc)},
                ErrorSeverity.HIGH,
                clock=self._clock,
            )
            return StrategyOutcome(
                strategy=ValidationStrategy.CONSOLIDATED,
                success=False,
                query_count=1,
                errors=[error],
            )

        errors: List[SubscriptionValidationError] = []
        has_active = row is not None
        tier = SubscriptionTier.parse(row.tier) if row is not None else SubscriptionTier.MEMBER
        expiry = row.end_date if row is not None else None

        if row is not None and row.membership_tier is not None:
            stored_tier = SubscriptionTier.parse(row.membership_tier)
            if stored_tier != tier:
                errors.append(
                    create_validation_error(
                        ValidationErrorCode.MEMBERSHIP_TIER_MISMATCH,
                        f"Stored membership tier {stored_tier.value} differs from"
                        f" subscription tier {tier.value}",
                        {"user_id": user_id, "stored_tier": stored_tier.value, "tier": tier.value},
                        ErrorSeverity.LOW,
                        clock=self._clock,
                    )
                )

        status = self._build_status(
            user_id,
            has_active=has_active,
            tier=tier,
            expiry=expiry,
            source=ValidationSource.CONSOLIDATED_QUERY,
            errors=errors,
            now=now,
        )
        return StrategyOutcome(
            strategy=ValidationStrategy.CONSOLIDATED,
            success=True,
            query_count=1,
            status=status,
            errors=errors,
        )

    async def _legacy(self, user_id: str) -> StrategyOutcome:
        query_count = 0

        def failure(
            code: ValidationErrorCode,
            reason: FailSecureReason,
            message: str,
            exc: Exception,
            severity: ErrorSeverity,
        ) -> StrategyOutcome:
            logger.error("%s for user %s: %s", message, user_id, exc)
            error = create_validation_error(
                code,
                f"{message}: {exc}",
                {"user_id": user_id, "error": repr(exc)},
                severity,
                clock=self._clock,
            )
            return StrategyOutcome(
                strategy=ValidationStrategy.LEGACY,
                success=False,
                query_count=query_count,
                errors=[error],
                fail_reason=reason,
            )

        query_count += 1
        try:
            has_active = bool(await self._repository.has_active_subscription(user_id))
        except Exception as exc:
            return failure(
                ValidationErrorCode.ACTIVE_SUBSCRIPTION_CHECK_FAILED,
                FailSecureReason.ACTIVE_SUBSCRIPTION_CHECK_FAILED,
                "Failed to check active subscription",
                exc,
                ErrorSeverity.HIGH,
            )

        query_count += 1
        try:
            raw_tier = await self._repository.get_user_subscription_tier(user_id)
        except Exception as exc:
            return failure(
                ValidationErrorCode.SUBSCRIPTION_TIER_CHECK_FAILED,
                FailSecureReason.SUBSCRIPTION_TIER_CHECK_FAILED,
                "Failed to get subscription tier",
                exc,
                ErrorSeverity.MEDIUM,
            )

        query_count += 1
        try:
            details = await self._repository.fetch_subscription_details(user_id)
        except Exception as exc:
            return failure(
                ValidationErrorCode.SUBSCRIPTION_DETAILS_CHECK_FAILED,
                FailSecureReason.SUBSCRIPTION_DETAILS_CHECK_FAILED,
                "Failed to get subscription details",
                exc,
                ErrorSeverity.MEDIUM,
            )

        errors: List[SubscriptionValidationError] = []
        status = self._build_status(
            user_id,
            has_active=has_active,
            tier=SubscriptionTier.parse(raw_tier),
            expiry=details.end_date if details is not None else None,
            source=ValidationSource.LEGACY,
            errors=errors,
            now=self._clock(),
        )
        return StrategyOutcome(
            strategy=ValidationStrategy.LEGACY,
            success=True,
            query_count=query_count,
            status=status,
            errors=errors,
        )

    def _build_status(
        self,
        user_id: str,
        *,
        has_active: bool,
        tier: SubscriptionTier,
        expiry: Optional[datetime],
        source: ValidationSource,
        errors: List[SubscriptionValidationError],
        now: datetime,
    ) -> SubscriptionStatus:
        is_expired = expiry is not None and expiry <= now
        if has_active and is_expired:
            errors.append(
                create_validation_error(
                    ValidationErrorCode.SUBSCRIPTION_EXPIRED,
                    "User has active subscription flag but subscription is expired",
                    {
                        "user_id": user_id,
                        "subscription_expiry": expiry.isoformat() if expiry else None,
                    },
                    ErrorSeverity.MEDIUM,
                    clock=self._clock,
                )
            )
        if not has_active:
            tier = SubscriptionTier.MEMBER
        return SubscriptionStatus(
            has_active_subscription=has_active,
            current_tier=tier,
            subscription_expiry=expiry,
            is_valid=has_active and not is_expired and tier != SubscriptionTier.MEMBER,
            last_validated=now,
            validation_source=source,
            warnings=warnings_from(errors),
        )

    def _fail_secure(
        self, user_id: str, state: _ValidationState, reason: FailSecureReason
    ) -> None:
        state.status = create_fail_secure_status(user_id, reason, clock=self._clock)
        state.success = False
        state.strategy = ValidationStrategy.FAIL_SECURE
