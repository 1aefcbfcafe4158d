"""API-specific request/response schemas (Pydantic v2)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel

from tcg_pricing.core.models import CacheState, Category, Payload


# -- Error --


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    error: str
    detail: str | None = None


class PriceUnavailableResponse(BaseModel):
    """Returned with HTTP 503 when no provider answered and nothing is cached."""

    state: Literal["price_unavailable"] = "price_unavailable"
    key: str | None = None
    category: str | None = None
    attempts: list[dict[str, Any]] = []


# -- Health --


class HealthResponse(BaseModel):
    status: str
    version: str
    storage_backend: str
    providers: list[str]
    cache_entries: dict[str, int]


# -- Prices --


class ResolutionResponse(BaseModel):
    """A resolved payload with its provenance."""

    key: str
    category: Category
    cache_state: CacheState
    source_provider: str
    fetched_at: datetime
    payload: Payload


# -- Operations --


class PolicyResponse(BaseModel):
    category: Category
    ttl_seconds: int
    soft_refresh_seconds: int
    credit_cost: float


class QuotaResponse(BaseModel):
    provider: str
    period: str
    window_start: datetime
    used: int
    limit: int
    remaining: int


class CacheMutationResponse(BaseModel):
    removed: int
    category: Category | None = None
