"""Shared pytest fixtures for tcg-pricing."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from tcg_pricing.core.config import CacheConfig, StorageConfig
from tcg_pricing.core.models import (
    SEALED_TIER,
    CatalogRecord,
    Category,
    PriceRecord,
    PriceTier,
    QuotaPeriod,
    RequestSpec,
    SearchResult,
    TrendChange,
)
from tcg_pricing.engine.metrics import CacheMetrics
from tcg_pricing.engine.policy import PolicyRegistry
from tcg_pricing.engine.quota import QuotaTracker
from tcg_pricing.engine.resolver import Resolver
from tcg_pricing.providers.base import BatchFetchResult, FetchResult
from tcg_pricing.storage.cache_store import SqliteCacheStore
from tcg_pricing.storage.database import Database
from tcg_pricing.storage.quota_store import SqliteQuotaStore

T0 = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Controllable replacement for utc_now()."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def price_record(identity: str = "sv1-25", market: float = 12.5) -> PriceRecord:
    return PriceRecord(
        item_identity=identity,
        tiers=[
            PriceTier(tier_label="raw/NM", low=market - 2, market=market, high=market + 3, as_of=T0),
            PriceTier(tier_label="graded/PSA-10", market=market * 8, as_of=T0),
        ],
        trend={7: TrendChange(absolute_change=0.5, percent_change=4.0)},
    )


def sealed_record(identity: str = "sv1-booster-box", market: float = 140.0) -> PriceRecord:
    return PriceRecord(
        item_identity=identity,
        tiers=[PriceTier(tier_label=SEALED_TIER, market=market, as_of=T0)],
    )


def default_payload(request: RequestSpec):
    match request.category:
        case Category.SINGLE_PRICE:
            return price_record(request.item_identity)
        case Category.SEALED_PRICE:
            return sealed_record(request.item_identity)
        case Category.SEARCH_RESULT:
            return SearchResult(query=request.item_identity, items=[{"id": "sv1-25"}], total=1)
        case _:
            return CatalogRecord(item_identity=request.item_identity, name="Pikachu")


class FakeAdapter:
    """In-memory adapter that counts calls and can be told to fail or stall."""

    def __init__(
        self,
        name: str,
        categories: frozenset[Category] = frozenset(Category),
        *,
        payload=default_payload,
        error: Exception | None = None,
        delay: float = 0.0,
        quota: tuple = (),
    ) -> None:
        self.name = name
        self.categories = categories
        self.payload = payload
        self.error = error
        self.delay = delay
        self.quota = quota
        self.calls: list[RequestSpec] = []
        self.closed = False

    async def fetch(self, request: RequestSpec) -> FetchResult:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return FetchResult(self.payload(request), quota=self.quota)

    async def aclose(self) -> None:
        self.closed = True


class FakeBatchAdapter(FakeAdapter):
    """Batch-capable variant; ``missing`` identities are left out of batch replies."""

    def __init__(self, name: str, *, batch_size: int = 2, missing: set[str] | None = None, **kwargs) -> None:
        super().__init__(name, **kwargs)
        self.batch_size = batch_size
        self.batch_categories = frozenset({Category.SINGLE_PRICE})
        self.missing = missing or set()
        self.batches: list[list[RequestSpec]] = []

    async def fetch_batch(self, requests) -> BatchFetchResult:
        self.batches.append(list(requests))
        if self.error is not None:
            raise self.error
        return BatchFetchResult(
            payloads={
                r.cache_key: self.payload(r)
                for r in requests
                if r.item_identity not in self.missing
            },
            quota=self.quota,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def db():
    """In-memory database with migrations applied."""
    database = Database(StorageConfig(sqlite_path=":memory:"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def cache_store(db) -> SqliteCacheStore:
    return SqliteCacheStore(db)


@pytest.fixture
def quota_store(db) -> SqliteQuotaStore:
    return SqliteQuotaStore(db)


@pytest.fixture
def policies() -> PolicyRegistry:
    return PolicyRegistry.from_config(CacheConfig())


@pytest.fixture
def make_tracker(quota_store, clock):
    """Factory for QuotaTracker over the shared store."""

    def _make(limits: dict[str, dict[QuotaPeriod, int]] | None = None) -> QuotaTracker:
        return QuotaTracker(quota_store, limits or {}, clock=clock)

    return _make


@pytest.fixture
async def make_resolver(cache_store, policies, make_tracker, clock):
    """Factory for Resolver with overridable adapters, chains, and limits."""
    created: list[Resolver] = []

    def _make(
        adapters,
        chains: dict[Category, list[str]] | None = None,
        limits: dict[str, dict[QuotaPeriod, int]] | None = None,
        **kwargs,
    ) -> Resolver:
        by_name = {a.name: a for a in adapters}
        if chains is None:
            chains = {category: list(by_name) for category in Category}
        resolver = Resolver(
            cache_store,
            policies,
            kwargs.pop("tracker", None) or make_tracker(limits),
            by_name,
            chains,
            metrics=kwargs.pop("metrics", None) or CacheMetrics(),
            clock=clock,
            **kwargs,
        )
        created.append(resolver)
        return resolver

    yield _make
    for resolver in created:
        await resolver.aclose()


@pytest.fixture
def single_request() -> RequestSpec:
    return RequestSpec(category=Category.SINGLE_PRICE, item_identity="sv1-25")
