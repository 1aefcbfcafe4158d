"""tcg_pricing.core — Foundation types, config, and exceptions."""

from tcg_pricing.core.config import (
    APIConfig,
    CacheConfig,
    CachePolicyConfig,
    LoggingConfig,
    PricingConfig,
    ProviderConfig,
    ResolverConfig,
    SchedulerConfig,
    StorageConfig,
    load_config,
)
from tcg_pricing.core.exceptions import (
    AllProvidersExhaustedError,
    ConfigError,
    ItemNotFoundError,
    MalformedResponseError,
    NetworkFailureError,
    PricingError,
    ProviderError,
    QuotaExceededError,
    RateLimitedError,
    StorageError,
)
from tcg_pricing.core.models import (
    TREND_WINDOWS,
    CacheEntry,
    CacheKey,
    CacheState,
    CatalogRecord,
    Category,
    ItemIdentity,
    Payload,
    PolicyEntry,
    PriceRecord,
    PriceTier,
    ProviderErrorKind,
    ProviderName,
    QuotaObservation,
    QuotaPeriod,
    QuotaState,
    RequestPriority,
    RequestSpec,
    Resolution,
    SearchResult,
    StorageBackend,
    TrendChange,
    utc_now,
)

__all__ = [
    # Type aliases
    "CacheKey",
    "ItemIdentity",
    "ProviderName",
    "Payload",
    "TREND_WINDOWS",
    # Enums
    "Category",
    "CacheState",
    "QuotaPeriod",
    "ProviderErrorKind",
    "RequestPriority",
    "StorageBackend",
    # Models
    "RequestSpec",
    "PriceTier",
    "TrendChange",
    "PriceRecord",
    "CatalogRecord",
    "SearchResult",
    "CacheEntry",
    "QuotaState",
    "QuotaObservation",
    "PolicyEntry",
    "Resolution",
    "utc_now",
    # Config
    "PricingConfig",
    "StorageConfig",
    "CacheConfig",
    "CachePolicyConfig",
    "ProviderConfig",
    "ResolverConfig",
    "SchedulerConfig",
    "APIConfig",
    "LoggingConfig",
    "load_config",
    # Exceptions
    "PricingError",
    "ConfigError",
    "StorageError",
    "QuotaExceededError",
    "ProviderError",
    "RateLimitedError",
    "ItemNotFoundError",
    "MalformedResponseError",
    "NetworkFailureError",
    "AllProvidersExhaustedError",
]
