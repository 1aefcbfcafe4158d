"""FastAPI route definitions for the pricing API."""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query, Request

import tcg_pricing
from tcg_pricing.api.deps import get_engine
from tcg_pricing.api.schemas import (
    CacheMutationResponse,
    HealthResponse,
    PolicyResponse,
    QuotaResponse,
    ResolutionResponse,
)
from tcg_pricing.core.models import Category, RequestSpec, utc_now
from tcg_pricing.engine.metrics import MetricsSnapshot
from tcg_pricing.service import PricingEngine

router = APIRouter()


# -- Health --


@router.get("/health", response_model=HealthResponse)
async def health_check(engine: PricingEngine = Depends(get_engine)):
    """Storage reachability, configured providers, and cache size by category."""
    healthy = await engine.db.health_check()
    counts = await engine.cache.count_by_category() if healthy else {}
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=tcg_pricing.__version__,
        storage_backend=str(engine.config.storage.backend.value),
        providers=sorted(engine.adapters),
        cache_entries={str(c): n for c, n in counts.items()},
    )


# -- Prices --


@router.get("/prices/{category}/{item_identity}", response_model=ResolutionResponse)
async def get_price(
    category: Category,
    item_identity: str,
    request: Request,
    engine: PricingEngine = Depends(get_engine),
):
    """Resolve one item. Extra query parameters become part of the cache key.

    Responds 503 ``{"state": "price_unavailable"}`` when every provider
    failed and nothing is cached.
    """
    spec = RequestSpec(
        category=category,
        item_identity=item_identity,
        query_params=dict(request.query_params),
    )
    resolution = await engine.resolver.get(spec)
    return ResolutionResponse(
        key=resolution.key,
        category=resolution.category,
        cache_state=resolution.cache_state,
        source_provider=resolution.source_provider,
        fetched_at=resolution.fetched_at,
        payload=resolution.payload,
    )


# -- Observability --


@router.get("/metrics", response_model=MetricsSnapshot)
async def get_metrics(engine: PricingEngine = Depends(get_engine)):
    return engine.metrics.snapshot()


@router.get("/quota", response_model=list[QuotaResponse])
async def get_quota(engine: PricingEngine = Depends(get_engine)):
    """Local quota counters for every provider with a configured limit."""
    states = await engine.quota.snapshot()
    return [
        QuotaResponse(
            provider=s.provider,
            period=str(s.period),
            window_start=s.window_start,
            used=s.used,
            limit=s.limit,
            remaining=s.remaining,
        )
        for s in states
    ]


@router.get("/policies", response_model=list[PolicyResponse])
async def list_policies(engine: PricingEngine = Depends(get_engine)):
    return [
        PolicyResponse(
            category=p.category,
            ttl_seconds=int(p.ttl.total_seconds()),
            soft_refresh_seconds=int(p.soft_refresh_interval.total_seconds()),
            credit_cost=p.credit_cost,
        )
        for p in engine.policies.all()
    ]


# -- Cache maintenance --


@router.post("/cache/sweep", response_model=CacheMutationResponse)
async def sweep_cache(
    idle_seconds: int = Query(0, ge=0, description="Keep expired entries hit this recently"),
    engine: PricingEngine = Depends(get_engine),
):
    removed = await engine.cache.sweep_expired(utc_now(), timedelta(seconds=idle_seconds))
    return CacheMutationResponse(removed=removed)


@router.delete("/cache", response_model=CacheMutationResponse)
async def clear_cache(
    category: Category | None = Query(None, description="Only clear this category"),
    engine: PricingEngine = Depends(get_engine),
):
    removed = await engine.cache.clear(category)
    return CacheMutationResponse(removed=removed, category=category)
