"""Data access for subscription validation backed by Postgres."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional, Protocol, Sequence

import asyncpg

from .errors import BackendQueryError
from .models import ActivitySignal, ConsolidatedSubscriptionRow, SubscriptionDetails, ensure_utc


class SubscriptionRepository(Protocol):
    """Backend queries the validation engine and cache warmer depend on."""

    async def fetch_consolidated_subscription(
        self, user_id: str, now: datetime
    ) -> Optional[ConsolidatedSubscriptionRow]:
        ...

    async def has_active_subscription(self, user_id: str) -> bool:
        ...

    async def get_user_subscription_tier(self, user_id: str) -> Optional[str]:
        ...

    async def fetch_subscription_details(self, user_id: str) -> Optional[SubscriptionDetails]:
        ...

    async def fetch_stored_membership_tier(self, user_id: str) -> Optional[str]:
        ...

    async def fetch_role_activity(self, since: datetime, limit: int) -> Sequence[ActivitySignal]:
        ...

    async def fetch_subscription_activity(
        self, since: datetime, limit: int
    ) -> Sequence[ActivitySignal]:
        ...


CONSOLIDATED_SQL = """
    SELECT
        s.user_id,
        s.tier,
        s.is_active,
        s.end_date,
        s.subscription_type,
        u.membership_tier
    FROM user_subscriptions AS s
    INNER JOIN users AS u ON u.id = s.user_id
    WHERE s.user_id = $1
      AND s.is_active = true
      AND s.end_date >= $2
    ORDER BY s.end_date DESC
    LIMIT 1
"""

HAS_ACTIVE_SQL = "SELECT has_active_subscription($1) AS has_active"

TIER_SQL = "SELECT get_user_subscription_tier($1) AS tier"

DETAILS_SQL = """
    SELECT end_date, tier, subscription_type
    FROM user_subscriptions
    WHERE user_id = $1
      AND is_active = true
    ORDER BY end_date DESC
    LIMIT 1
"""

MEMBERSHIP_TIER_SQL = "SELECT membership_tier FROM users WHERE id = $1"

ROLE_ACTIVITY_SQL = """
    SELECT user_id, last_active
    FROM role_activity
    WHERE last_active >= $1
    ORDER BY last_active DESC
    LIMIT $2
"""

SUBSCRIPTION_ACTIVITY_SQL = """
    SELECT user_id, recorded_at
    FROM subscription_metrics
    WHERE user_id IS NOT NULL
      AND recorded_at >= $1
    ORDER BY recorded_at DESC
    LIMIT $2
"""


def _row_to_consolidated(row: Mapping[str, Any]) -> ConsolidatedSubscriptionRow:
    return ConsolidatedSubscriptionRow(
        user_id=row["user_id"],
        tier=row.get("tier"),
        is_active=bool(row.get("is_active", True)),
        end_date=row["end_date"],
        subscription_type=row.get("subscription_type"),
        membership_tier=row.get("membership_tier"),
    )


def _row_to_details(row: Mapping[str, Any]) -> SubscriptionDetails:
    return SubscriptionDetails(
        end_date=row.get("end_date"),
        tier=row.get("tier"),
        subscription_type=row.get("subscription_type"),
    )


def _rows_to_signals(rows: Sequence[Mapping[str, Any]], column: str) -> List[ActivitySignal]:
    signals: List[ActivitySignal] = []
    for row in rows:
        user_id = row.get("user_id")
        occurred_at = row.get(column)
        if user_id is None or occurred_at is None:
            continue
        signals.append(ActivitySignal(user_id=str(user_id), occurred_at=ensure_utc(occurred_at)))
    return signals


async def create_subscription_pool(
    db_config: Mapping[str, Any],
    *,
    connect_timeout: float = 5.0,
    command_timeout: float = 10.0,
) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        min_size=1,
        max_size=10,
        command_timeout=command_timeout,
        timeout=connect_timeout,
        **dict(db_config),
    )


class PostgresSubscriptionRepository:
    """asyncpg-backed implementation of :class:`SubscriptionRepository`."""

    def __init__(self, pool: asyncpg.Pool, *, query_timeout: Optional[float] = None) -> None:
        self._pool = pool
        self._query_timeout = query_timeout

    async def _fetchrow(self, sql: str, *args: Any) -> Optional[Mapping[str, Any]]:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(sql, *args, timeout=self._query_timeout)
        return dict(row) if row is not None else None

    async def _fetch(self, sql: str, *args: Any) -> List[Mapping[str, Any]]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(sql, *args, timeout=self._query_timeout)
        return [dict(row) for row in rows]

    async def fetch_consolidated_subscription(
        self, user_id: str, now: datetime
    ) -> Optional[ConsolidatedSubscriptionRow]:
        row = await self._fetchrow(CONSOLIDATED_SQL, user_id, now)
        return _row_to_consolidated(row) if row else None

    async def has_active_subscription(self, user_id: str) -> bool:
        row = await self._fetchrow(HAS_ACTIVE_SQL, user_id)
        if row is None or row.get("has_active") is None:
            raise BackendQueryError(
                code="has_active_subscription_empty",
                message="has_active_subscription returned no value",
                detail={"user_id": user_id},
            )
        return bool(row["has_active"])

    async def get_user_subscription_tier(self, user_id: str) -> Optional[str]:
        row = await self._fetchrow(TIER_SQL, user_id)
        return row.get("tier") if row else None

    async def fetch_subscription_details(self, user_id: str) -> Optional[SubscriptionDetails]:
        row = await self._fetchrow(DETAILS_SQL, user_id)
        return _row_to_details(row) if row else None

    async def fetch_stored_membership_tier(self, user_id: str) -> Optional[str]:
        row = await self._fetchrow(MEMBERSHIP_TIER_SQL, user_id)
        return row.get("membership_tier") if row else None

    async def fetch_role_activity(self, since: datetime, limit: int) -> Sequence[ActivitySignal]:
        rows = await self._fetch(ROLE_ACTIVITY_SQL, since, limit)
        return _rows_to_signals(rows, "last_active")

    async def fetch_subscription_activity(
        self, since: datetime, limit: int
    ) -> Sequence[ActivitySignal]:
        rows = await self._fetch(SUBSCRIPTION_ACTIVITY_SQL, since, limit)
        return _rows_to_signals(rows, "recorded_at")
