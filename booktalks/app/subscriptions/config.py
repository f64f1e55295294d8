"""Configuration for the subscription validation and caching subsystem."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .models import (
    DEFAULT_VALIDATION_TIMEOUT,
    MAX_VALIDATION_TIMEOUT,
    MIN_CACHE_TTL,
    CacheConfig,
)

_ENVIRONMENT_CACHE_DEFAULTS: Dict[str, Dict[str, int]] = {
    "development": {"ttl": 60, "max_entries": 1_000},
    "test": {"ttl": 60, "max_entries": 100},
    "production": {"ttl": 300, "max_entries": 10_000},
}


@dataclass(frozen=True)
class SubscriptionFeatureFlags:
    """Feature switches resolved once per process and passed down."""

    consolidated_validation: bool = True
    enhanced_invalidation: bool = True
    cache_warming: bool = True
    performance_monitoring: bool = True


@dataclass(frozen=True)
class SubscriptionSettings:
    environment: str = "production"
    flags: SubscriptionFeatureFlags = field(default_factory=SubscriptionFeatureFlags)
    cache: CacheConfig = field(default_factory=CacheConfig)
    validation_timeout: float = DEFAULT_VALIDATION_TIMEOUT
    cleanup_interval: float = 60.0
    warming_interval: Optional[float] = None
    report_interval: Optional[float] = None
    db: Dict[str, Any] = field(default_factory=dict)
    db_connect_timeout: float = 5.0


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: Optional[float]) -> Optional[float]:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_subscription_settings(env: Optional[Mapping[str, str]] = None) -> SubscriptionSettings:
    """Load :class:`SubscriptionSettings` from environment variables."""

    env_mapping = os.environ if env is None else env

    environment = (env_mapping.get("APP_ENV") or "production").strip().lower()
    cache_defaults = _ENVIRONMENT_CACHE_DEFAULTS.get(
        environment, _ENVIRONMENT_CACHE_DEFAULTS["production"]
    )

    flags = SubscriptionFeatureFlags(
        consolidated_validation=_to_bool(
            env_mapping.get("SUBSCRIPTION_CONSOLIDATED_VALIDATION"), default=True
        ),
        enhanced_invalidation=_to_bool(
            env_mapping.get("SUBSCRIPTION_CACHE_INVALIDATION"), default=True
        ),
        cache_warming=_to_bool(env_mapping.get("SUBSCRIPTION_CACHE_WARMING"), default=False),
        performance_monitoring=_to_bool(env_mapping.get("SUBSCRIPTION_MONITORING"), default=False),
    )

    cache = CacheConfig(
        ttl=max(
            MIN_CACHE_TTL,
            _to_int(env_mapping.get("SUBSCRIPTION_CACHE_TTL"), default=cache_defaults["ttl"]),
        ),
        max_entries=max(
            1,
            _to_int(
                env_mapping.get("SUBSCRIPTION_CACHE_MAX_ENTRIES"),
                default=cache_defaults["max_entries"],
            ),
        ),
        compression=_to_bool(env_mapping.get("SUBSCRIPTION_CACHE_COMPRESSION"), default=True),
        key_prefix=env_mapping.get("SUBSCRIPTION_CACHE_PREFIX", "subscription:"),
    )

    timeout = _to_float(
        env_mapping.get("SUBSCRIPTION_VALIDATION_TIMEOUT"), default=DEFAULT_VALIDATION_TIMEOUT
    )

    db = {
        "host": env_mapping.get("DB_HOST", "127.0.0.1"),
        "port": _to_int(env_mapping.get("DB_PORT"), default=5432),
        "database": env_mapping.get("DB_NAME", "booktalks"),
        "user": env_mapping.get("DB_USER", "booktalks"),
        "password": env_mapping.get("DB_PASSWORD", "booktalks"),
    }

    return SubscriptionSettings(
        environment=environment,
        flags=flags,
        cache=cache,
        validation_timeout=min(max(timeout or DEFAULT_VALIDATION_TIMEOUT, 0.1), MAX_VALIDATION_TIMEOUT),
        cleanup_interval=max(
            1.0,
            _to_float(env_mapping.get("SUBSCRIPTION_CACHE_CLEANUP_INTERVAL"), default=60.0) or 60.0,
        ),
        warming_interval=_to_float(env_mapping.get("SUBSCRIPTION_CACHE_WARMING_INTERVAL"), default=None),
        report_interval=_to_float(env_mapping.get("SUBSCRIPTION_REPORT_INTERVAL"), default=None),
        db=db,
        db_connect_timeout=_to_float(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5.0) or 5.0,
    )
