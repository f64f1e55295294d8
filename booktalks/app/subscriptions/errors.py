"""Error taxonomy and fail-secure defaults for subscription validation."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from .models import (
    ErrorSeverity,
    SubscriptionStatus,
    SubscriptionTier,
    SubscriptionValidationError,
    ValidationSource,
)

Clock = Callable[[], datetime]


class ValidationErrorCode(str, Enum):
    ACTIVE_SUBSCRIPTION_CHECK_FAILED = "ACTIVE_SUBSCRIPTION_CHECK_FAILED"
    SUBSCRIPTION_TIER_CHECK_FAILED = "SUBSCRIPTION_TIER_CHECK_FAILED"
    SUBSCRIPTION_DETAILS_CHECK_FAILED = "SUBSCRIPTION_DETAILS_CHECK_FAILED"
    CONSOLIDATED_VALIDATION_FAILED = "CONSOLIDATED_VALIDATION_FAILED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    MEMBERSHIP_TIER_MISMATCH = "MEMBERSHIP_TIER_MISMATCH"
    BATCH_VALIDATION_FAILED = "BATCH_VALIDATION_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNEXPECTED_VALIDATION_ERROR = "UNEXPECTED_VALIDATION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"


class FailSecureReason(str, Enum):
    """Why a request was downgraded to the least-privileged status."""

    ACTIVE_SUBSCRIPTION_CHECK_FAILED = "active_subscription_check_failed"
    SUBSCRIPTION_TIER_CHECK_FAILED = "subscription_tier_check_failed"
    SUBSCRIPTION_DETAILS_CHECK_FAILED = "subscription_details_check_failed"
    VALIDATION_ORCHESTRATION_ERROR = "validation_orchestration_error"
    VALIDATION_TIMEOUT = "validation_timeout"
    BATCH_VALIDATION_FAILED = "batch_validation_failed"
    API_ERROR = "api_error"
    CACHE_ERROR = "cache_error"


_FAIL_SECURE_MESSAGES: Dict[FailSecureReason, str] = {
    FailSecureReason.ACTIVE_SUBSCRIPTION_CHECK_FAILED: "Unable to verify active subscription",
    FailSecureReason.SUBSCRIPTION_TIER_CHECK_FAILED: "Unable to verify subscription tier",
    FailSecureReason.SUBSCRIPTION_DETAILS_CHECK_FAILED: "Unable to load subscription details",
    FailSecureReason.VALIDATION_ORCHESTRATION_ERROR: "Subscription validation failed unexpectedly",
    FailSecureReason.VALIDATION_TIMEOUT: "Subscription validation timed out",
    FailSecureReason.BATCH_VALIDATION_FAILED: "Batch subscription validation failed",
    FailSecureReason.API_ERROR: "API error",
    FailSecureReason.CACHE_ERROR: "Cache error",
}

_FAIL_SECURE_SEVERITIES = frozenset({ErrorSeverity.HIGH, ErrorSeverity.CRITICAL})

FAIL_SECURE_CODES = frozenset(
    {
        ValidationErrorCode.TIMEOUT_ERROR.value,
        ValidationErrorCode.VALIDATION_FAILED.value,
        ValidationErrorCode.UNEXPECTED_VALIDATION_ERROR.value,
        ValidationErrorCode.BATCH_VALIDATION_FAILED.value,
    }
)


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


def create_validation_error(
    code: ValidationErrorCode | str,
    message: str,
    details: Optional[Mapping[str, Any]] = None,
    severity: ErrorSeverity = ErrorSeverity.MEDIUM,
    *,
    clock: Optional[Clock] = None,
) -> SubscriptionValidationError:
    now = (clock or _default_clock)()
    code_value = code.value if isinstance(code, ValidationErrorCode) else str(code)
    return SubscriptionValidationError(
        code=code_value,
        message=message,
        details=dict(details or {}),
        timestamp=now,
        severity=severity,
    )


def create_fail_secure_status(
    user_id: str,
    reason: FailSecureReason,
    *,
    clock: Optional[Clock] = None,
    extra_warnings: Iterable[str] = (),
) -> SubscriptionStatus:
    """Build the MEMBER/inactive status returned whenever validation is not conclusive.

    ``user_id`` is accepted for symmetry with the callers' logging; it never
    influences the returned tier.
    """

    now = (clock or _default_clock)()
    warning = f"{_FAIL_SECURE_MESSAGES[reason]} - defaulting to MEMBER tier for security"
    return SubscriptionStatus(
        has_active_subscription=False,
        current_tier=SubscriptionTier.MEMBER,
        subscription_expiry=None,
        is_valid=False,
        last_validated=now,
        validation_source=ValidationSource.FALLBACK,
        warnings=(warning, *extra_warnings),
    )


def should_fail_secure(errors: Iterable[SubscriptionValidationError]) -> bool:
    for error in errors:
        if error.severity in _FAIL_SECURE_SEVERITIES:
            return True
        if error.code in FAIL_SECURE_CODES:
            return True
    return False


def warnings_from(errors: Iterable[SubscriptionValidationError]) -> Tuple[str, ...]:
    return tuple(
        error.message
        for error in errors
        if error.severity in (ErrorSeverity.LOW, ErrorSeverity.MEDIUM)
    )


@dataclass
class SubscriptionServiceError(Exception):
    """Raised internally when a subscription operation cannot proceed."""

    code: str
    message: str
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)


class BackendQueryError(SubscriptionServiceError):
    """A backend query returned an error or an unusable payload."""
