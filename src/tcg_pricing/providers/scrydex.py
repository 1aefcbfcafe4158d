"""Scrydex aggregator adapter: raw and graded tiers, trends, catalog data.

Scrydex nests prices per printing variant:

    data.variants[].prices[] = {type: raw|graded, condition, company, grade,
                                low, market, mid, high, currency, trends}

One variant is normalized per request: the ``variant`` query parameter
selects it by name, otherwise the first variant carrying prices is used.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from tcg_pricing.core.models import (
    SEALED_TIER,
    TREND_WINDOWS,
    CatalogRecord,
    Category,
    PriceRecord,
    PriceTier,
    RequestSpec,
    SearchResult,
    TrendChange,
    utc_now,
)
from tcg_pricing.providers.base import FetchResult, HttpProviderAdapter

logger = logging.getLogger(__name__)

_SEARCH_PAGE_SIZE = 100


class ScrydexAdapter(HttpProviderAdapter):
    """Primary aggregator. Serves every category."""

    name = "scrydex"
    categories = frozenset(Category)
    default_base_url = "https://api.scrydex.com/pokemon/v1"

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._config.api_key:
            headers["X-Api-Key"] = self._config.api_key
        if self._config.team_id:
            headers["X-Team-ID"] = self._config.team_id
        return headers

    async def fetch(self, request: RequestSpec) -> FetchResult:
        identity = request.item_identity
        variant = request.query_params.get("variant")
        match request.category:
            case Category.CARD_METADATA:
                data = await self._get_data(f"/cards/{identity}")
                with self._normalizing(id=identity):
                    return FetchResult(self._catalog(identity, data))
            case Category.EXPANSION_METADATA:
                data = await self._get_data(f"/expansions/{identity}")
                with self._normalizing(id=identity):
                    return FetchResult(self._catalog(identity, data))
            case Category.SINGLE_PRICE:
                data = await self._get_data(
                    f"/cards/{identity}", params={"include": "prices"}
                )
                with self._normalizing(id=identity):
                    return FetchResult(self._price_record(identity, data, variant))
            case Category.SEALED_PRICE:
                data = await self._get_data(
                    f"/sealed/{identity}", params={"include": "prices"}
                )
                with self._normalizing(id=identity):
                    return FetchResult(self._sealed_record(identity, data, variant))
            case Category.SEARCH_RESULT:
                params = {"q": identity, "page_size": str(_SEARCH_PAGE_SIZE)}
                params.update(request.query_params)
                body, _ = await self._request("GET", "/cards", params=params)
                items = body.get("data") if isinstance(body, dict) else None
                if not isinstance(items, list):
                    raise self._malformed("search response has no data list", query=identity)
                with self._normalizing(query=identity):
                    return FetchResult(
                        SearchResult(
                            query=identity,
                            items=items,
                            total=body.get("totalCount", body.get("total_count")),
                        )
                    )
        raise self._malformed(f"unsupported category {request.category}")

    async def _get_data(self, path: str, **kwargs: Any) -> dict[str, Any]:
        body, _ = await self._request("GET", path, **kwargs)
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise self._malformed("response has no data object", path=path)
        return data

    @staticmethod
    def _catalog(identity: str, data: dict[str, Any]) -> CatalogRecord:
        attributes = {k: v for k, v in data.items() if k not in ("variants", "name")}
        return CatalogRecord(item_identity=identity, name=data.get("name"), attributes=attributes)

    def _pick_variant(self, data: dict[str, Any], wanted: str | None) -> dict[str, Any]:
        variants = [v for v in data.get("variants") or [] if isinstance(v, dict)]
        if wanted is not None:
            for v in variants:
                if v.get("name") == wanted:
                    return v
            raise self._malformed(f"variant {wanted!r} not present", id=data.get("id"))
        for v in variants:
            if v.get("prices"):
                return v
        raise self._malformed("no priced variant", id=data.get("id"))

    def _price_record(
        self, identity: str, data: dict[str, Any], wanted: str | None
    ) -> PriceRecord:
        variant = self._pick_variant(data, wanted)
        as_of = utc_now()
        tiers: list[PriceTier] = []
        seen: set[str] = set()
        for price in variant.get("prices") or []:
            label = self._tier_label(price)
            if label is None or label in seen:
                continue
            seen.add(label)
            tiers.append(self._tier(label, price, as_of))
        if not tiers:
            raise self._malformed("variant has no usable price tiers", id=identity)
        return PriceRecord(
            item_identity=identity,
            tiers=tiers,
            trend=self._trend(variant.get("prices") or []),
        )

    def _sealed_record(
        self, identity: str, data: dict[str, Any], wanted: str | None
    ) -> PriceRecord:
        variant = self._pick_variant(data, wanted)
        raw = [p for p in variant.get("prices") or [] if p.get("type", "raw") == "raw"]
        if not raw:
            raise self._malformed("sealed product has no raw price", id=identity)
        return PriceRecord(
            item_identity=identity,
            tiers=[self._tier(SEALED_TIER, raw[0], utc_now())],
            trend=self._trend(raw[:1]),
        )

    @staticmethod
    def _tier_label(price: dict[str, Any]) -> str | None:
        kind = price.get("type", "raw")
        if kind == "raw":
            return f"raw/{price.get('condition') or 'NM'}"
        if kind == "graded":
            company, grade = price.get("company"), price.get("grade")
            if not company or grade is None:
                return None
            return f"graded/{company}-{grade}"
        return None

    @staticmethod
    def _tier(label: str, price: dict[str, Any], as_of: datetime) -> PriceTier:
        return PriceTier(
            tier_label=label,
            low=price.get("low"),
            market=price.get("market"),
            mid=price.get("mid"),
            high=price.get("high"),
            currency=price.get("currency") or "USD",
            as_of=as_of,
        )

    @staticmethod
    def _trend(prices: list[dict[str, Any]]) -> dict[int, TrendChange]:
        """Trends of the first raw price; windows we do not track are dropped."""
        source = next((p for p in prices if p.get("type", "raw") == "raw"), None)
        if source is None or not isinstance(source.get("trends"), dict):
            return {}
        trend: dict[int, TrendChange] = {}
        for name, change in source["trends"].items():
            if not name.startswith("days_") or not isinstance(change, dict):
                continue
            try:
                window = int(name.removeprefix("days_"))
            except ValueError:
                continue
            if window not in TREND_WINDOWS:
                continue
            trend[window] = TrendChange(
                absolute_change=change.get("price_change"),
                percent_change=change.get("percent_change"),
            )
        return trend
