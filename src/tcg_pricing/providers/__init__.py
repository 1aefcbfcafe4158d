"""tcg_pricing.providers — External pricing source adapters."""

from __future__ import annotations

from tcg_pricing.core.config import PricingConfig
from tcg_pricing.core.exceptions import ConfigError
from tcg_pricing.providers.base import (
    BatchFetchResult,
    BatchProviderAdapter,
    FetchResult,
    HttpProviderAdapter,
    ProviderAdapter,
    supports_batch,
)
from tcg_pricing.providers.justtcg import JustTcgAdapter
from tcg_pricing.providers.pricecharting import PriceChartingAdapter
from tcg_pricing.providers.scrydex import ScrydexAdapter

ADAPTER_KINDS: dict[str, type[HttpProviderAdapter]] = {
    "scrydex": ScrydexAdapter,
    "justtcg": JustTcgAdapter,
    "pricecharting": PriceChartingAdapter,
}


def build_adapters(config: PricingConfig) -> dict[str, ProviderAdapter]:
    """Instantiate one adapter per enabled provider.

    ``kind`` defaults to the provider's name, so a second account of the
    same service can be configured under another name.
    """
    adapters: dict[str, ProviderAdapter] = {}
    for name, provider in config.providers.items():
        if not provider.enabled:
            continue
        kind = provider.kind or name
        cls = ADAPTER_KINDS.get(kind)
        if cls is None:
            raise ConfigError(
                f"Unknown provider kind: {kind!r}",
                context={"field": f"providers.{name}.kind", "value": kind},
            )
        adapters[name] = cls(provider, name=name)
    return adapters


__all__ = [
    "ADAPTER_KINDS",
    "BatchFetchResult",
    "BatchProviderAdapter",
    "FetchResult",
    "HttpProviderAdapter",
    "JustTcgAdapter",
    "PriceChartingAdapter",
    "ProviderAdapter",
    "ScrydexAdapter",
    "build_adapters",
    "supports_batch",
]
