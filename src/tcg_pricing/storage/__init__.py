"""tcg_pricing.storage — SQLite persistence for cache entries and quota counters."""

from tcg_pricing.storage.cache_store import CacheStore, SqliteCacheStore
from tcg_pricing.storage.database import Database, create_database
from tcg_pricing.storage.quota_store import QuotaStore, SqliteQuotaStore

__all__ = [
    "CacheStore",
    "Database",
    "QuotaStore",
    "SqliteCacheStore",
    "SqliteQuotaStore",
    "create_database",
]
