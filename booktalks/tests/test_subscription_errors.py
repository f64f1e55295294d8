from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from booktalks.app.subscriptions import (
    ErrorSeverity,
    FailSecureReason,
    SubscriptionStatus,
    SubscriptionTier,
    ValidationErrorCode,
    ValidationOptions,
    ValidationSource,
    create_fail_secure_status,
    create_validation_error,
    should_fail_secure,
)
from booktalks.app.subscriptions.errors import warnings_from


def test_fail_secure_status_defaults_to_member(clock):
    status = create_fail_secure_status("user-1", FailSecureReason.VALIDATION_TIMEOUT, clock=clock)

    assert status.has_active_subscription is False
    assert status.current_tier == SubscriptionTier.MEMBER
    assert status.is_valid is False
    assert status.subscription_expiry is None
    assert status.validation_source == ValidationSource.FALLBACK
    assert status.last_validated == clock.now
    assert status.warnings == (
        "Subscription validation timed out - defaulting to MEMBER tier for security",
    )


def test_fail_secure_status_keeps_extra_warnings(clock):
    status = create_fail_secure_status(
        "user-1", FailSecureReason.API_ERROR, clock=clock, extra_warnings=["backend down"]
    )

    assert status.warnings[0].startswith("API error")
    assert status.warnings[1] == "backend down"


@pytest.mark.parametrize(
    "code, severity, expected",
    [
        (ValidationErrorCode.SUBSCRIPTION_EXPIRED, ErrorSeverity.MEDIUM, False),
        (ValidationErrorCode.MEMBERSHIP_TIER_MISMATCH, ErrorSeverity.LOW, False),
        (ValidationErrorCode.CONSOLIDATED_VALIDATION_FAILED, ErrorSeverity.HIGH, True),
        (ValidationErrorCode.SUBSCRIPTION_TIER_CHECK_FAILED, ErrorSeverity.CRITICAL, True),
        (ValidationErrorCode.TIMEOUT_ERROR, ErrorSeverity.LOW, True),
        (ValidationErrorCode.VALIDATION_FAILED, ErrorSeverity.MEDIUM, True),
    ],
)
def test_should_fail_secure_by_severity_or_code(clock, code, severity, expected):
    error = create_validation_error(code, "problem", {"user_id": "u"}, severity, clock=clock)

    assert should_fail_secure([error]) is expected


def test_should_fail_secure_empty_list_is_false():
    assert should_fail_secure([]) is False


def test_warnings_only_include_low_and_medium(clock):
    errors = [
        create_validation_error("A", "minor", severity=ErrorSeverity.LOW, clock=clock),
        create_validation_error("B", "moderate", severity=ErrorSeverity.MEDIUM, clock=clock),
        create_validation_error("C", "severe", severity=ErrorSeverity.HIGH, clock=clock),
    ]

    assert warnings_from(errors) == ("minor", "moderate")


def test_validation_error_records_timestamp_and_details(clock):
    error = create_validation_error(
        ValidationErrorCode.BATCH_VALIDATION_FAILED, "boom", {"user_id": "u-9"}, clock=clock
    )

    assert error.code == "BATCH_VALIDATION_FAILED"
    assert error.details == {"user_id": "u-9"}
    assert error.timestamp == clock.now
    assert error.severity == ErrorSeverity.MEDIUM


def test_tier_ordering():
    assert SubscriptionTier.PRIVILEGED_PLUS.at_least(SubscriptionTier.PRIVILEGED)
    assert SubscriptionTier.PRIVILEGED.at_least(SubscriptionTier.MEMBER)
    assert SubscriptionTier.PRIVILEGED.at_least(SubscriptionTier.PRIVILEGED)
    assert not SubscriptionTier.MEMBER.at_least(SubscriptionTier.PRIVILEGED)
    assert not SubscriptionTier.PRIVILEGED.at_least(SubscriptionTier.PRIVILEGED_PLUS)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("privileged", SubscriptionTier.PRIVILEGED),
        ("PRIVILEGED_PLUS", SubscriptionTier.PRIVILEGED_PLUS),
        ("privileged-plus", SubscriptionTier.PRIVILEGED_PLUS),
        ("gold", SubscriptionTier.MEMBER),
        (None, SubscriptionTier.MEMBER),
        (42, SubscriptionTier.MEMBER),
    ],
)
def test_tier_parse_defaults_unknown_values_to_member(raw, expected):
    assert SubscriptionTier.parse(raw) == expected


def test_status_rejects_valid_without_active_subscription(clock):
    with pytest.raises(ValidationError):
        SubscriptionStatus(
            has_active_subscription=False,
            current_tier=SubscriptionTier.PRIVILEGED,
            is_valid=True,
            validation_source=ValidationSource.DATABASE,
        )


def test_status_validity_is_rechecked_against_clock(clock):
    status = SubscriptionStatus(
        has_active_subscription=True,
        current_tier=SubscriptionTier.PRIVILEGED,
        subscription_expiry=clock.now + timedelta(hours=1),
        is_valid=True,
        validation_source=ValidationSource.DATABASE,
    )

    assert status.is_currently_valid(clock.now) is True
    assert status.is_currently_valid(clock.now + timedelta(hours=2)) is False


def test_status_serializes_with_camel_case_aliases(clock):
    status = create_fail_secure_status("user-1", FailSecureReason.API_ERROR, clock=clock)

    payload = status.model_dump(by_alias=True)

    assert payload["hasActiveSubscription"] is False
    assert payload["currentTier"] == SubscriptionTier.MEMBER
    assert payload["validationSource"] == ValidationSource.FALLBACK


def test_validation_options_clamp_timeout():
    assert ValidationOptions(timeout=30).timeout == 10.0
    assert ValidationOptions(timeout=None).timeout is None
    with pytest.raises(ValidationError):
        ValidationOptions(timeout=0)
