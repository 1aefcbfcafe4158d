"""Composition root: wire storage, engine, and adapters from configuration."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime

from tcg_pricing.core.config import PricingConfig
from tcg_pricing.core.models import ProviderName, QuotaPeriod, utc_now
from tcg_pricing.engine.metrics import CacheMetrics
from tcg_pricing.engine.policy import PolicyRegistry
from tcg_pricing.engine.quota import QuotaTracker
from tcg_pricing.engine.resolver import Resolver
from tcg_pricing.engine.scheduler import RefreshScheduler
from tcg_pricing.providers import ProviderAdapter, build_adapters
from tcg_pricing.storage.cache_store import SqliteCacheStore
from tcg_pricing.storage.database import Database, create_database
from tcg_pricing.storage.quota_store import SqliteQuotaStore

logger = logging.getLogger(__name__)


@dataclass
class PricingEngine:
    """Every long-lived component, built once per process."""

    config: PricingConfig
    db: Database
    cache: SqliteCacheStore
    policies: PolicyRegistry
    quota: QuotaTracker
    metrics: CacheMetrics
    adapters: dict[ProviderName, ProviderAdapter]
    resolver: Resolver
    scheduler: RefreshScheduler

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.resolver.aclose()
        for adapter in self.adapters.values():
            await adapter.aclose()
        await self.db.close()


def quota_limits(config: PricingConfig) -> dict[ProviderName, dict[QuotaPeriod, int]]:
    limits: dict[ProviderName, dict[QuotaPeriod, int]] = {}
    for name, provider in config.providers.items():
        periods: dict[QuotaPeriod, int] = {}
        if provider.daily_limit is not None:
            periods[QuotaPeriod.DAY] = provider.daily_limit
        if provider.monthly_limit is not None:
            periods[QuotaPeriod.MONTH] = provider.monthly_limit
        if periods:
            limits[name] = periods
    return limits


async def create_engine(
    config: PricingConfig,
    adapters: Mapping[ProviderName, ProviderAdapter] | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> PricingEngine:
    """Open the database and build the engine. ``adapters`` overrides the configured ones."""
    db = await create_database(config.storage)
    cache = SqliteCacheStore(db)
    policies = PolicyRegistry.from_config(config.cache)
    quota = QuotaTracker(SqliteQuotaStore(db), quota_limits(config), clock=clock)
    metrics = CacheMetrics()
    live = dict(adapters) if adapters is not None else build_adapters(config)
    chains = {category: config.chain_for(category) for category in config.fallback_chains}
    resolver = Resolver(
        cache,
        policies,
        quota,
        live,
        chains,
        metrics=metrics,
        foreground_timeout=config.resolver.foreground_timeout_seconds,
        background_timeout=config.resolver.background_timeout_seconds,
        background_headroom=config.resolver.background_quota_headroom,
        clock=clock,
    )
    scheduler = RefreshScheduler(cache, resolver, config.scheduler, clock=clock)
    logger.info(
        "Pricing engine ready: %d providers, database %s", len(live), db.path
    )
    return PricingEngine(
        config=config,
        db=db,
        cache=cache,
        policies=policies,
        quota=quota,
        metrics=metrics,
        adapters=live,
        resolver=resolver,
        scheduler=scheduler,
    )
