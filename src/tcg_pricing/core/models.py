"""Pydantic data models: the engine's type contracts."""

from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# --- Type Aliases ---

CacheKey = str
ItemIdentity = str
ProviderName = str

# Lookback windows (days) a provider may report trends for.
TREND_WINDOWS: tuple[int, ...] = (1, 7, 14, 30, 90, 180)

SEALED_TIER = "sealed"


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


# --- Enumerations ---


class Category(StrEnum):
    """Kinds of cached data. Each drives a policy and a fallback chain."""

    CARD_METADATA = "card_metadata"
    EXPANSION_METADATA = "expansion_metadata"
    SINGLE_PRICE = "single_price"
    SEALED_PRICE = "sealed_price"
    SEARCH_RESULT = "search_result"


class CacheState(StrEnum):
    """Provenance of a resolved payload."""

    FRESH = "fresh"
    STALE_SERVABLE = "stale-but-servable"
    MISS_RESOLVED = "miss-resolved"
    EXPIRED_FALLBACK = "expired-fallback"


class QuotaPeriod(StrEnum):
    """Quota accounting windows."""

    DAY = "day"
    MONTH = "month"


class ProviderErrorKind(StrEnum):
    """Normalized provider failure classes."""

    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    NETWORK_FAILURE = "network_failure"


class RequestPriority(StrEnum):
    """Foreground requests come from callers; background from refreshes."""

    FOREGROUND = "foreground"
    BACKGROUND = "background"


class StorageBackend(StrEnum):
    """Supported storage backends."""

    SQLITE = "sqlite"


PRICE_CATEGORIES = frozenset({Category.SINGLE_PRICE, Category.SEALED_PRICE})
CATALOG_CATEGORIES = frozenset({Category.CARD_METADATA, Category.EXPANSION_METADATA})


# --- Requests ---


class RequestSpec(BaseModel):
    """A provider-agnostic request for one item in one category."""

    model_config = ConfigDict(frozen=True)

    category: Category
    item_identity: ItemIdentity
    query_params: dict[str, str] = {}

    @field_validator("item_identity")
    @classmethod
    def identity_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("item_identity must not be blank")
        return v.strip()

    @property
    def cache_key(self) -> CacheKey:
        """Deterministic key: parameter order never changes it."""
        params = json.dumps(self.query_params, sort_keys=True, separators=(",", ":"))
        digest = hashlib.sha1(params.encode("utf-8")).hexdigest()[:16]
        return f"{self.category.value}:{self.item_identity.lower()}:{digest}"


# --- Payloads ---


class PriceTier(BaseModel):
    """One price observation, e.g. raw/NM or graded/PSA-10.

    low <= market <= high is deliberately not enforced: providers disagree
    and we record what they send.
    """

    model_config = ConfigDict(frozen=True)

    tier_label: str
    low: float | None = None
    market: float | None = None
    mid: float | None = None
    high: float | None = None
    currency: str = "USD"
    as_of: datetime

    @field_validator("tier_label")
    @classmethod
    def label_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("tier_label must not be blank")
        return v


class TrendChange(BaseModel):
    """Price movement over one lookback window."""

    model_config = ConfigDict(frozen=True)

    absolute_change: float | None = None
    percent_change: float | None = None


class PriceRecord(BaseModel):
    """Canonical, provider-agnostic price record."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["price"] = "price"
    item_identity: ItemIdentity
    tiers: list[PriceTier]
    trend: dict[int, TrendChange] = {}

    @field_validator("tiers")
    @classmethod
    def tiers_unique(cls, v: list[PriceTier]) -> list[PriceTier]:
        if not v:
            raise ValueError("a price record needs at least one tier")
        labels = [t.tier_label for t in v]
        if len(set(labels)) != len(labels):
            raise ValueError(f"duplicate tier labels: {labels}")
        return v

    @field_validator("trend")
    @classmethod
    def trend_windows_known(cls, v: dict[int, TrendChange]) -> dict[int, TrendChange]:
        unknown = sorted(set(v) - set(TREND_WINDOWS))
        if unknown:
            raise ValueError(f"unsupported trend windows: {unknown}")
        return v

    def tier(self, label: str) -> PriceTier | None:
        """Return the tier with the given label, or None."""
        for t in self.tiers:
            if t.tier_label == label:
                return t
        return None

    @property
    def is_sealed(self) -> bool:
        return len(self.tiers) == 1 and self.tiers[0].tier_label == SEALED_TIER


class CatalogRecord(BaseModel):
    """Card or expansion metadata as reported by a provider."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["catalog"] = "catalog"
    item_identity: ItemIdentity
    name: str | None = None
    attributes: dict[str, Any] = {}


class SearchResult(BaseModel):
    """A raw search result set."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["search"] = "search"
    query: str
    items: list[dict[str, Any]] = []
    total: int | None = None


Payload = Annotated[
    Union[PriceRecord, CatalogRecord, SearchResult],
    Field(discriminator="kind"),
]


# --- Cache ---


class CacheEntry(BaseModel):
    """A cached payload plus its expiry metadata."""

    model_config = ConfigDict(frozen=True)

    key: CacheKey
    category: Category
    item_identity: ItemIdentity
    query_params: dict[str, str] = {}
    payload: Payload
    created_at: datetime
    soft_refresh_at: datetime
    expires_at: datetime
    source_provider: ProviderName
    hit_count: int = 0
    last_hit_at: datetime | None = None

    @field_validator("hit_count")
    @classmethod
    def hit_count_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("hit_count cannot be negative")
        return v

    @model_validator(mode="after")
    def timestamps_ordered(self) -> CacheEntry:
        if not self.created_at <= self.soft_refresh_at <= self.expires_at:
            raise ValueError(
                "expected created_at <= soft_refresh_at <= expires_at, got "
                f"{self.created_at} / {self.soft_refresh_at} / {self.expires_at}"
            )
        return self

    def is_fresh(self, now: datetime) -> bool:
        return now < self.soft_refresh_at

    def is_servable(self, now: datetime) -> bool:
        """Still before hard expiry (fresh or stale-but-servable)."""
        return now < self.expires_at

    def to_request(self) -> RequestSpec:
        return RequestSpec(
            category=self.category,
            item_identity=self.item_identity,
            query_params=self.query_params,
        )


# --- Quota ---


class QuotaState(BaseModel):
    """Request counter for one provider in one accounting window."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderName
    period: QuotaPeriod
    window_start: datetime
    used: int = 0
    limit: int

    @field_validator("used")
    @classmethod
    def used_non_negative(cls, v: int) -> int:
        return max(v, 0)

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit


class QuotaObservation(BaseModel):
    """Remaining quota as reported by the provider itself."""

    model_config = ConfigDict(frozen=True)

    period: QuotaPeriod
    remaining: int
    limit: int | None = None


# --- Policy ---


class PolicyEntry(BaseModel):
    """Time-to-live and soft-refresh interval for one category."""

    model_config = ConfigDict(frozen=True)

    category: Category
    ttl: timedelta
    soft_refresh_interval: timedelta
    credit_cost: float = 1.0

    @model_validator(mode="after")
    def ttl_covers_soft_refresh(self) -> PolicyEntry:
        if self.soft_refresh_interval <= timedelta(0):
            raise ValueError("soft_refresh_interval must be positive")
        if self.ttl < self.soft_refresh_interval:
            raise ValueError(
                f"ttl ({self.ttl}) must be >= soft_refresh_interval "
                f"({self.soft_refresh_interval}) for {self.category}"
            )
        return self


# --- Results ---


class Resolution(BaseModel):
    """What the resolver hands back to callers: payload plus provenance."""

    model_config = ConfigDict(frozen=True)

    key: CacheKey
    category: Category
    payload: Payload
    cache_state: CacheState
    source_provider: ProviderName
    fetched_at: datetime

    @classmethod
    def from_entry(cls, entry: CacheEntry, state: CacheState) -> Resolution:
        return cls(
            key=entry.key,
            category=entry.category,
            payload=entry.payload,
            cache_state=state,
            source_provider=entry.source_provider,
            fetched_at=entry.created_at,
        )

    @property
    def record(self) -> PriceRecord | None:
        """The price record, when the payload is one."""
        return self.payload if isinstance(self.payload, PriceRecord) else None
