"""JustTCG marketplace-pricing adapter.

JustTCG reports one row per (condition, printing) variant and embeds the
account's remaining request budget in every response body:

    {"data": [...], "_metadata": {"apiDailyRequestsRemaining": 87,
                                  "apiDailyLimit": 100,
                                  "apiRequestsRemaining": 912,
                                  "apiRequestLimit": 1000}}

Those counts feed the quota tracker's reconciliation. Price lookups can
be batched with ``POST /cards`` (a list of ``{"cardId": ...}`` bodies).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

import httpx

from tcg_pricing.core.exceptions import ItemNotFoundError, ProviderError
from tcg_pricing.core.models import (
    CacheKey,
    CatalogRecord,
    Category,
    Payload,
    PriceRecord,
    PriceTier,
    QuotaObservation,
    QuotaPeriod,
    RequestSpec,
    SearchResult,
    TrendChange,
    utc_now,
)
from tcg_pricing.providers.base import BatchFetchResult, FetchResult, HttpProviderAdapter

logger = logging.getLogger(__name__)

# percent-change field -> trend window (days)
_TREND_FIELDS: dict[str, int] = {
    "priceChange24hr": 1,
    "priceChange7d": 7,
    "priceChange30d": 30,
    "priceChange90d": 90,
}

_QUOTA_FIELDS = (
    (QuotaPeriod.DAY, "apiDailyRequestsRemaining", "apiDailyLimit"),
    (QuotaPeriod.MONTH, "apiRequestsRemaining", "apiRequestLimit"),
)


def _count(value: Any) -> int | None:
    """A non-negative request count, or None when absent or unreadable."""
    if isinstance(value, bool):
        return None
    try:
        count = int(value)
    except (TypeError, ValueError):
        return None
    return count if count >= 0 else None


class JustTcgAdapter(HttpProviderAdapter):
    """Secondary source for single-card prices. Supports batch lookup."""

    name = "justtcg"
    categories = frozenset(
        {Category.SINGLE_PRICE, Category.CARD_METADATA, Category.SEARCH_RESULT}
    )
    batch_categories = frozenset({Category.SINGLE_PRICE})
    default_base_url = "https://api.justtcg.com/v1"

    @property
    def batch_size(self) -> int:
        return self._config.batch_size

    def _auth_headers(self) -> dict[str, str]:
        return {"x-api-key": self._config.api_key} if self._config.api_key else {}

    def _quota_from_response(
        self, response: httpx.Response, body: Any
    ) -> tuple[QuotaObservation, ...]:
        meta = body.get("_metadata") if isinstance(body, dict) else None
        if not isinstance(meta, dict):
            return ()
        observed: list[QuotaObservation] = []
        for period, remaining_field, limit_field in _QUOTA_FIELDS:
            remaining = _count(meta.get(remaining_field))
            if remaining is None:
                if meta.get(remaining_field) is not None:
                    logger.warning(
                        "Ignoring unreadable %s=%r from justtcg",
                        remaining_field, meta[remaining_field],
                    )
                continue
            observed.append(
                QuotaObservation(
                    period=period, remaining=remaining, limit=_count(meta.get(limit_field))
                )
            )
        return tuple(observed)

    async def fetch(self, request: RequestSpec) -> FetchResult:
        identity = request.item_identity
        if request.category == Category.SEARCH_RESULT:
            params = {"q": identity, "game": "pokemon", **request.query_params}
            body, quota = await self._request("GET", "/cards", params=params)
            rows = self._rows(body, quota)
            meta = body.get("meta")
            total = meta.get("total") if isinstance(meta, dict) else None
            with self._normalizing(quota=quota, query=identity):
                return FetchResult(
                    SearchResult(query=identity, items=rows, total=total), quota=quota
                )

        if request.category not in self.categories:
            raise self._malformed(f"unsupported category {request.category}")

        body, quota = await self._request(
            "GET", "/cards", params={"cardId": identity, **request.query_params}
        )
        rows = self._rows(body, quota)
        if not rows:
            raise ItemNotFoundError(
                f"justtcg has no card {identity!r}",
                context={"provider": self.name, "item": identity},
                quota=quota,
            )
        card = rows[0]
        with self._normalizing(quota=quota, id=identity):
            if request.category == Category.CARD_METADATA:
                attributes = {k: v for k, v in card.items() if k not in ("variants", "name")}
                payload = CatalogRecord(
                    item_identity=identity, name=card.get("name"), attributes=attributes
                )
            else:
                payload = self._price_record(identity, card, utc_now())
        return FetchResult(payload, quota=quota)

    async def fetch_batch(self, requests: Sequence[RequestSpec]) -> BatchFetchResult:
        """Price many cards with one request, keyed back by cache key."""
        by_id: dict[str, RequestSpec] = {r.item_identity.lower(): r for r in requests}
        body, quota = await self._request(
            "POST", "/cards", json=[{"cardId": r.item_identity} for r in requests]
        )
        as_of = utc_now()
        payloads: dict[CacheKey, Payload] = {}
        errors: dict[CacheKey, ProviderError] = {}
        for card in self._rows(body, quota):
            request = by_id.get(str(card.get("id", "")).lower())
            if request is None:
                continue
            try:
                with self._normalizing(id=request.item_identity):
                    payloads[request.cache_key] = self._price_record(
                        request.item_identity, card, as_of
                    )
            except ProviderError as e:
                errors[request.cache_key] = e
        for request in requests:
            key = request.cache_key
            if key not in payloads and key not in errors:
                errors[key] = ItemNotFoundError(
                    f"justtcg batch omitted {request.item_identity!r}",
                    context={"provider": self.name, "item": request.item_identity},
                )
        logger.debug(
            "justtcg batch of %d: %d priced, %d failed",
            len(requests), len(payloads), len(errors),
        )
        return BatchFetchResult(payloads=payloads, errors=errors, quota=quota)

    def _rows(
        self, body: Any, quota: tuple[QuotaObservation, ...] = ()
    ) -> list[dict[str, Any]]:
        rows = body.get("data") if isinstance(body, dict) else None
        if not isinstance(rows, list):
            raise self._malformed("response has no data list", quota=quota)
        return [r for r in rows if isinstance(r, dict)]

    def _price_record(
        self, identity: str, card: dict[str, Any], as_of: datetime
    ) -> PriceRecord:
        tiers: list[PriceTier] = []
        trend: dict[int, TrendChange] = {}
        for variant in card.get("variants") or []:
            if not isinstance(variant, dict) or variant.get("price") is None:
                continue
            label = f"raw/{variant.get('condition') or 'Unknown'}"
            printing = variant.get("printing")
            if printing and printing != "Normal":
                label = f"{label}/{printing}"
            if any(t.tier_label == label for t in tiers):
                continue
            price = float(variant["price"])
            tiers.append(
                PriceTier(
                    tier_label=label,
                    low=variant.get("minPrice7d", price),
                    market=price,
                    high=variant.get("maxPrice7d"),
                    as_of=as_of,
                )
            )
            if not trend:
                trend = {
                    window: TrendChange(percent_change=variant[name])
                    for name, window in _TREND_FIELDS.items()
                    if variant.get(name) is not None
                }
        if not tiers:
            raise self._malformed("card has no priced variants", id=identity)
        return PriceRecord(item_identity=identity, tiers=tiers, trend=trend)
