"""PriceCharting sealed-product adapter.

Prices arrive as integer cents. A sealed product always normalizes to a
single ``sealed`` tier.
"""

from __future__ import annotations

import logging
from typing import Any

from tcg_pricing.core.exceptions import ItemNotFoundError
from tcg_pricing.core.models import (
    SEALED_TIER,
    Category,
    PriceRecord,
    PriceTier,
    RequestSpec,
    SearchResult,
    utc_now,
)
from tcg_pricing.providers.base import FetchResult, HttpProviderAdapter

logger = logging.getLogger(__name__)

# Preference order for the market figure of a sealed product.
_MARKET_FIELDS = ("new-price", "cib-price", "loose-price")


def _cents(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return round(int(value) / 100, 2)


class PriceChartingAdapter(HttpProviderAdapter):
    name = "pricecharting"
    categories = frozenset({Category.SEALED_PRICE, Category.SEARCH_RESULT})
    default_base_url = "https://www.pricecharting.com"

    def _token(self) -> dict[str, str]:
        return {"t": self._config.api_key} if self._config.api_key else {}

    async def fetch(self, request: RequestSpec) -> FetchResult:
        identity = request.item_identity
        if request.category == Category.SEARCH_RESULT:
            body = await self._checked(
                "/api/products", {"q": identity, **self._token()}, identity
            )
            products = body.get("products") or []
            with self._normalizing(query=identity):
                return FetchResult(
                    SearchResult(query=identity, items=products, total=len(products))
                )
        if request.category != Category.SEALED_PRICE:
            raise self._malformed(f"unsupported category {request.category}")

        body = await self._checked(
            "/api/product", {"id": identity, **self._token()}, identity
        )
        with self._normalizing(id=identity):
            market = next(
                (_cents(body[f]) for f in _MARKET_FIELDS if body.get(f) not in (None, "")),
                None,
            )
            if market is None:
                raise self._malformed("product has no price", id=identity)
            tier = PriceTier(
                tier_label=SEALED_TIER,
                low=_cents(body.get("retail-new-buy")),
                market=market,
                high=_cents(body.get("retail-new-sell")),
                as_of=utc_now(),
            )
        return FetchResult(PriceRecord(item_identity=identity, tiers=[tier]))

    async def _checked(
        self, path: str, params: dict[str, str], identity: str
    ) -> dict[str, Any]:
        """GET and unwrap PriceCharting's ``status`` envelope.

        PriceCharting reports lookup failures with HTTP 200 and
        ``{"status": "error", "error-message": ...}``.
        """
        body, _ = await self._request("GET", path, params=params)
        if not isinstance(body, dict):
            raise self._malformed("response is not an object", id=identity)
        if body.get("status") == "success":
            return body
        message = str(body.get("error-message", "unknown error"))
        if "no such product" in message.lower():
            raise ItemNotFoundError(
                f"pricecharting has no product {identity!r}",
                context={"provider": self.name, "item": identity},
            )
        raise self._malformed(message, id=identity)
