import asyncio
import contextlib
import logging
import os

import asyncpg
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from booktalks.app.routes.subscriptions import router as subscriptions_router
from booktalks.app.subscriptions import (
    PostgresMetricsSink,
    PostgresSubscriptionRepository,
    SubscriptionService,
    SubscriptionSettings,
    build_subscription_service,
    load_subscription_settings,
)
from booktalks.app.subscriptions.repository import create_subscription_pool

load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("booktalks")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

app = FastAPI(title="BookTalks Subscriptions API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions_router)


def create_subscription_service(settings: SubscriptionSettings, pool: asyncpg.Pool) -> SubscriptionService:
    return build_subscription_service(
        settings,
        PostgresSubscriptionRepository(pool, query_timeout=settings.validation_timeout),
        metrics_sink=PostgresMetricsSink(pool),
    )


@app.on_event("startup")
async def setup_subscriptions() -> None:
    settings = load_subscription_settings()
    pool = await create_subscription_pool(
        settings.db,
        connect_timeout=settings.db_connect_timeout,
    )
    service = create_subscription_service(settings, pool)
    service.start()
    app.state.subscription_pool = pool
    app.state.subscription_service = service
    logger.info(
        "Subscription service started (environment=%s, cache ttl=%ss, max entries=%s)",
        settings.environment,
        settings.cache.ttl,
        settings.cache.max_entries,
    )


@app.on_event("shutdown")
async def teardown_subscriptions() -> None:
    service = getattr(app.state, "subscription_service", None)
    pool = getattr(app.state, "subscription_pool", None)

    if service:
        with contextlib.suppress(asyncio.CancelledError):
            await service.close()

    if pool:
        await pool.close()


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}
