"""Fire-and-forget delivery of subscription metrics to the monitoring backend."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Mapping, Optional, Protocol

import asyncpg

from .models import MetricEvent

LOGGER = logging.getLogger("subscriptions.metrics")

RECORD_METRIC_SQL = "SELECT record_subscription_metric($1, $2, $3::jsonb, $4)"


class SubscriptionMetricsSink(Protocol):
    async def record_subscription_metric(
        self,
        metric_type: str,
        user_id: Optional[str],
        data: Mapping[str, Any],
        source: str,
    ) -> None:
        ...


class PostgresMetricsSink:
    """Sends metric events to the ``record_subscription_metric`` procedure."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def record_subscription_metric(
        self,
        metric_type: str,
        user_id: Optional[str],
        data: Mapping[str, Any],
        source: str,
    ) -> None:
        payload = json.dumps(dict(data), default=str)
        async with self._pool.acquire() as connection:
            await connection.execute(RECORD_METRIC_SQL, metric_type, user_id, payload, source)


class SubscriptionMetricsQueue:
    """Buffers metric events so recording never sits on the request path.

    Producers call :meth:`put_nowait`; a background task started with
    :meth:`run` drains the queue into the sink. Sink failures are logged and
    dropped.
    """

    def __init__(
        self,
        sink: Optional[SubscriptionMetricsSink],
        *,
        enabled: bool = True,
        maxsize: int = 1_000,
    ) -> None:
        self._sink = sink
        self.enabled = enabled and sink is not None
        self._queue: "asyncio.Queue[MetricEvent]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def put_nowait(self, event: MetricEvent) -> None:
        if not self.enabled or self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            LOGGER.warning("Subscription metrics queue is full; dropping %s event", event.metric_type)

    def emit(
        self,
        metric_type: str,
        *,
        source: str,
        user_id: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.put_nowait(
            MetricEvent(metric_type=metric_type, source=source, user_id=user_id, data=dict(data or {}))
        )

    async def _deliver(self, event: MetricEvent) -> bool:
        if self._sink is None:
            return False
        try:
            await self._sink.record_subscription_metric(
                event.metric_type, event.user_id, event.data, event.source
            )
        except Exception:
            LOGGER.exception(
                "Failed to record subscription metric %s from %s", event.metric_type, event.source
            )
            return False
        return True

    async def run(self) -> None:
        if not self.enabled:
            return
        try:
            while not self._closed:
                event = await self._queue.get()
                try:
                    await self._deliver(event)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            await self.flush()
            raise

    def close(self) -> None:
        self._closed = True

    async def flush(self) -> int:
        """Deliver everything currently buffered; returns the number delivered."""

        if not self.enabled:
            return 0
        items: List[MetricEvent] = []
        while not self._queue.empty():
            try:
                items.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:  # pragma: no cover - race guard
                break
        delivered = 0
        try:
            for event in items:
                if await self._deliver(event):
                    delivered += 1
        finally:
            for _ in items:
                self._queue.task_done()
        return delivered
