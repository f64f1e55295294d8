"""Validate many users' subscriptions with throttling and failure isolation."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from .errors import (
    FailSecureReason,
    ValidationErrorCode,
    create_fail_secure_status,
    create_validation_error,
)
from .models import (
    BatchConfig,
    ErrorSeverity,
    SystemLoad,
    ValidationOptions,
    ValidationResult,
)

logger = logging.getLogger(__name__)

_BATCH_SIZE_STEPS = (
    (50, 5),
    (200, 10),
    (500, 20),
    (1000, 30),
)
_MAX_BATCH_SIZE = 50


class SupportsValidate(Protocol):
    async def validate(
        self, user_id: str, options: Optional[ValidationOptions] = None
    ) -> ValidationResult:
        ...


def optimize_batch_config(
    user_count: int,
    system_load: SystemLoad | str = SystemLoad.MEDIUM,
) -> BatchConfig:
    """Pick batch size from the population and throttle harder under load."""

    load = SystemLoad(system_load)
    batch_size = _MAX_BATCH_SIZE
    for upper_bound, size in _BATCH_SIZE_STEPS:
        if user_count < upper_bound:
            batch_size = size
            break

    if load == SystemLoad.LOW:
        return BatchConfig(batch_size=batch_size, batch_delay=0.05, max_concurrency=batch_size)
    if load == SystemLoad.HIGH:
        return BatchConfig(
            batch_size=batch_size,
            batch_delay=0.25,
            max_concurrency=max(1, batch_size // 4),
        )
    return BatchConfig(
        batch_size=batch_size,
        batch_delay=0.1,
        max_concurrency=max(1, batch_size // 2),
    )


def _chunks(items: Sequence[str], size: int) -> List[Sequence[str]]:
    return [items[index : index + size] for index in range(0, len(items), size)]


class BatchValidator:
    def __init__(
        self,
        validator: SupportsValidate,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._validator = validator
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    async def batch_validate(
        self,
        user_ids: Sequence[str],
        options: Optional[ValidationOptions] = None,
        batch_config: Optional[BatchConfig] = None,
    ) -> List[ValidationResult]:
        """Return one result per input id.

        Batches run one after another with ``batch_delay`` between them. Within
        a batch at most ``max_concurrency`` validations are in flight. A user
        whose validation raises gets a fail-secure result unless
        ``continue_on_error`` is off, in which case the exception propagates.
        """

        config = batch_config or optimize_batch_config(len(user_ids))
        ids = list(user_ids)
        results: List[ValidationResult] = []
        batches = _chunks(ids, config.batch_size)

        logger.info(
            "Batch validating %s users in %s batches (size=%s, concurrency=%s)",
            len(ids),
            len(batches),
            config.batch_size,
            config.max_concurrency,
        )

        for index, batch in enumerate(batches):
            for chunk in _chunks(batch, config.max_concurrency):
                results.extend(await self._validate_chunk(chunk, options, config))
            if index < len(batches) - 1 and config.batch_delay > 0:
                await self._sleep(config.batch_delay)

        return results

    async def _validate_chunk(
        self,
        chunk: Sequence[str],
        options: Optional[ValidationOptions],
        config: BatchConfig,
    ) -> List[ValidationResult]:
        outcomes = await asyncio.gather(
            *(self._validator.validate(user_id, options) for user_id in chunk),
            return_exceptions=config.continue_on_error,
        )
        results: List[ValidationResult] = []
        for user_id, outcome in zip(chunk, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                results.append(self._failed_result(user_id, outcome))
            else:
                results.append(outcome)
        return results

    def _failed_result(self, user_id: str, exc: BaseException) -> ValidationResult:
        logger.error("Batch validation failed for user %s: %s", user_id, exc)
        error = create_validation_error(
            ValidationErrorCode.BATCH_VALIDATION_FAILED,
            f"Batch validation failed: {exc}",
            {"user_id": user_id, "error": repr(exc)},
            ErrorSeverity.HIGH,
            clock=self._clock,
        )
        return ValidationResult(
            user_id=user_id,
            status=create_fail_secure_status(
                user_id, FailSecureReason.BATCH_VALIDATION_FAILED, clock=self._clock
            ),
            errors=(error,),
            query_count=0,
            success=False,
        )
