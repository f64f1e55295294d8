from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest

from booktalks.app.subscriptions.models import (
    ActivitySignal,
    ConsolidatedSubscriptionRow,
    SubscriptionDetails,
)

NOW = datetime(2025, 5, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class FakeSubscriptionRepository:
    """In-memory stand-in for the subscription tables and stored procedures."""

    def __init__(self) -> None:
        self.consolidated: Dict[str, ConsolidatedSubscriptionRow] = {}
        self.active: Dict[str, bool] = {}
        self.tiers: Dict[str, Optional[str]] = {}
        self.details: Dict[str, SubscriptionDetails] = {}
        self.stored_tiers: Dict[str, Optional[str]] = {}
        self.role_activity: List[ActivitySignal] = []
        self.subscription_activity: List[ActivitySignal] = []
        self.failures: Dict[str, Exception] = {}
        self.delay: float = 0.0
        self.calls: List[Tuple[str, Any]] = []

    def add_subscription(
        self,
        user_id: str,
        tier: str,
        end_date: datetime,
        *,
        membership_tier: Optional[str] = None,
    ) -> None:
        self.consolidated[user_id] = ConsolidatedSubscriptionRow(
            user_id=user_id,
            tier=tier,
            end_date=end_date,
            subscription_type="monthly",
            membership_tier=membership_tier if membership_tier is not None else tier,
        )
        self.active[user_id] = True
        self.tiers[user_id] = tier
        self.details[user_id] = SubscriptionDetails(
            end_date=end_date, tier=tier, subscription_type="monthly"
        )
        self.stored_tiers[user_id] = membership_tier if membership_tier is not None else tier

    async def _enter(self, method: str, argument: Any) -> None:
        self.calls.append((method, argument))
        if self.delay:
            await asyncio.sleep(self.delay)
        failure = self.failures.get(method)
        if failure is not None:
            raise failure

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def fetch_consolidated_subscription(
        self, user_id: str, now: datetime
    ) -> Optional[ConsolidatedSubscriptionRow]:
        await self._enter("fetch_consolidated_subscription", user_id)
        row = self.consolidated.get(user_id)
        if row is None or row.end_date < now:
            return None
        return row

    async def has_active_subscription(self, user_id: str) -> bool:
        await self._enter("has_active_subscription", user_id)
        return self.active.get(user_id, False)

    async def get_user_subscription_tier(self, user_id: str) -> Optional[str]:
        await self._enter("get_user_subscription_tier", user_id)
        return self.tiers.get(user_id, "MEMBER")

    async def fetch_subscription_details(self, user_id: str) -> Optional[SubscriptionDetails]:
        await self._enter("fetch_subscription_details", user_id)
        return self.details.get(user_id)

    async def fetch_stored_membership_tier(self, user_id: str) -> Optional[str]:
        await self._enter("fetch_stored_membership_tier", user_id)
        return self.stored_tiers.get(user_id, "MEMBER")

    async def fetch_role_activity(self, since: datetime, limit: int) -> Sequence[ActivitySignal]:
        await self._enter("fetch_role_activity", limit)
        return [signal for signal in self.role_activity if signal.occurred_at >= since][:limit]

    async def fetch_subscription_activity(
        self, since: datetime, limit: int
    ) -> Sequence[ActivitySignal]:
        await self._enter("fetch_subscription_activity", limit)
        return [
            signal for signal in self.subscription_activity if signal.occurred_at >= since
        ][:limit]


class RecordingMetricsSink:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.recorded: List[Tuple[str, Optional[str], Mapping[str, Any], str]] = []

    async def record_subscription_metric(
        self,
        metric_type: str,
        user_id: Optional[str],
        data: Mapping[str, Any],
        source: str,
    ) -> None:
        if self.fail:
            raise RuntimeError("metrics backend unavailable")
        self.recorded.append((metric_type, user_id, data, source))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> FakeSubscriptionRepository:
    return FakeSubscriptionRepository()


@pytest.fixture
def metrics_sink() -> RecordingMetricsSink:
    return RecordingMetricsSink()


@pytest.fixture
def failing_metrics_sink() -> RecordingMetricsSink:
    return RecordingMetricsSink(fail=True)
