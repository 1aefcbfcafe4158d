"""Tests for the SQLite cache and quota stores."""

from datetime import timedelta

import pytest

from conftest import T0, price_record
from tcg_pricing.core.config import StorageConfig
from tcg_pricing.core.exceptions import StorageError
from tcg_pricing.core.models import (
    CacheEntry,
    CatalogRecord,
    Category,
    QuotaPeriod,
    QuotaState,
    RequestSpec,
)
from tcg_pricing.storage.cache_store import CacheStore, SqliteCacheStore
from tcg_pricing.storage.database import Database, create_database, from_db_time, to_db_time
from tcg_pricing.storage.quota_store import QuotaStore, SqliteQuotaStore


def make_entry(
    identity: str = "sv1-25",
    category: Category = Category.SINGLE_PRICE,
    created=T0,
    soft=timedelta(hours=20),
    ttl=timedelta(hours=24),
    **overrides,
) -> CacheEntry:
    request = RequestSpec(category=category, item_identity=identity)
    if category == Category.SINGLE_PRICE:
        payload = price_record(identity)
    else:
        payload = CatalogRecord(item_identity=identity, name="Pikachu")
    fields = dict(
        key=request.cache_key,
        category=category,
        item_identity=identity,
        payload=payload,
        created_at=created,
        soft_refresh_at=created + soft,
        expires_at=created + ttl,
        source_provider="scrydex",
    )
    fields.update(overrides)
    return CacheEntry(**fields)


class TestDatabase:
    async def test_initialize_applies_migrations(self, db):
        async with db.conn.execute("SELECT MAX(version) FROM schema_version") as cursor:
            row = await cursor.fetchone()
        assert row[0] == 1
        assert await db.health_check()

    async def test_conn_before_initialize_raises(self):
        database = Database(StorageConfig(sqlite_path=":memory:"))
        with pytest.raises(StorageError, match="not initialized"):
            database.conn
        assert not await database.health_check()

    async def test_file_database_survives_reopen(self, tmp_path):
        config = StorageConfig(sqlite_path=str(tmp_path / "nested" / "cache.db"))
        first = await create_database(config)
        await SqliteCacheStore(first).put(make_entry())
        await first.close()

        second = await create_database(config)
        try:
            entry = await SqliteCacheStore(second).get(make_entry().key)
            assert entry is not None
            assert entry.payload == price_record("sv1-25")
        finally:
            await second.close()

    def test_db_time_round_trip_sorts_lexically(self):
        earlier = to_db_time(T0)
        later = to_db_time(T0 + timedelta(microseconds=1))
        assert earlier < later
        assert from_db_time(earlier) == T0
        assert from_db_time(None) is None


class TestSqliteCacheStore:
    def test_satisfies_protocol(self, cache_store):
        assert isinstance(cache_store, CacheStore)

    async def test_get_missing_returns_none(self, cache_store):
        assert await cache_store.get("single_price:nope:0") is None

    async def test_put_then_get(self, cache_store):
        entry = make_entry(query_params={"variant": "holofoil"})
        await cache_store.put(entry)
        loaded = await cache_store.get(entry.key)
        assert loaded == entry

    async def test_put_replaces_whole_row(self, cache_store):
        await cache_store.put(make_entry(source_provider="scrydex"))
        replacement = make_entry(
            created=T0 + timedelta(hours=1),
            source_provider="justtcg",
            payload=price_record("sv1-25", market=99.0),
        )
        await cache_store.put(replacement)
        loaded = await cache_store.get(replacement.key)
        assert loaded.source_provider == "justtcg"
        assert loaded.payload.tier("raw/NM").market == 99.0
        assert loaded.created_at == T0 + timedelta(hours=1)

    async def test_record_hit(self, cache_store):
        entry = make_entry()
        await cache_store.put(entry)
        await cache_store.record_hit(entry.key, T0 + timedelta(hours=1))
        await cache_store.record_hit(entry.key, T0 + timedelta(hours=2))
        loaded = await cache_store.get(entry.key)
        assert loaded.hit_count == 2
        assert loaded.last_hit_at == T0 + timedelta(hours=2)

    async def test_put_never_lowers_popularity(self, cache_store):
        entry = make_entry()
        await cache_store.put(entry)
        for hour in (1, 2, 3):
            await cache_store.record_hit(entry.key, T0 + timedelta(hours=hour))

        refreshed = make_entry(created=T0 + timedelta(hours=4), hit_count=1, last_hit_at=None)
        await cache_store.put(refreshed)

        loaded = await cache_store.get(entry.key)
        assert loaded.created_at == T0 + timedelta(hours=4)
        assert loaded.hit_count == 3
        assert loaded.last_hit_at == T0 + timedelta(hours=3)

    async def test_put_keeps_higher_incoming_popularity(self, cache_store):
        await cache_store.put(make_entry())
        await cache_store.put(make_entry(hit_count=4, last_hit_at=T0 + timedelta(hours=2)))
        loaded = await cache_store.get(make_entry().key)
        assert loaded.hit_count == 4
        assert loaded.last_hit_at == T0 + timedelta(hours=2)

    async def test_record_hit_on_missing_key_is_noop(self, cache_store):
        await cache_store.record_hit("single_price:nope:0", T0)

    async def test_due_for_refresh_window(self, cache_store):
        stale = make_entry("stale", created=T0 - timedelta(hours=21))
        fresh = make_entry("fresh", created=T0)
        expired = make_entry("expired", created=T0 - timedelta(hours=25))
        for entry in (stale, fresh, expired):
            await cache_store.put(entry)

        due = await cache_store.due_for_refresh(T0, limit=10)
        assert [e.item_identity for e in due] == ["stale"]

    async def test_due_for_refresh_most_popular_first(self, cache_store):
        quiet = make_entry("quiet", created=T0 - timedelta(hours=22))
        popular = make_entry("popular", created=T0 - timedelta(hours=21), hit_count=7)
        older = make_entry("older", created=T0 - timedelta(hours=23))
        for entry in (quiet, popular, older):
            await cache_store.put(entry)

        due = await cache_store.due_for_refresh(T0, limit=10)
        assert [e.item_identity for e in due] == ["popular", "older", "quiet"]
        assert len(await cache_store.due_for_refresh(T0, limit=1)) == 1

    async def test_sweep_expired(self, cache_store):
        await cache_store.put(make_entry("expired", created=T0 - timedelta(hours=30)))
        await cache_store.put(make_entry("live", created=T0))
        removed = await cache_store.sweep_expired(T0)
        assert removed == 1
        counts = await cache_store.count_by_category()
        assert counts == {Category.SINGLE_PRICE: 1}

    async def test_sweep_keeps_recently_hit_expired_entries(self, cache_store):
        expired = make_entry("expired", created=T0 - timedelta(hours=30))
        await cache_store.put(expired)
        await cache_store.record_hit(expired.key, T0 - timedelta(minutes=10))

        assert await cache_store.sweep_expired(T0, idle_grace=timedelta(hours=1)) == 0
        assert await cache_store.sweep_expired(T0, idle_grace=timedelta(minutes=5)) == 1

    async def test_delete(self, cache_store):
        entry = make_entry()
        await cache_store.put(entry)
        assert await cache_store.delete(entry.key) is True
        assert await cache_store.delete(entry.key) is False
        assert await cache_store.get(entry.key) is None

    async def test_clear_by_category(self, cache_store):
        await cache_store.put(make_entry("a"))
        await cache_store.put(make_entry("b"))
        await cache_store.put(
            make_entry("sv1-25", category=Category.CARD_METADATA, ttl=timedelta(days=3))
        )
        assert await cache_store.clear(Category.SINGLE_PRICE) == 2
        assert await cache_store.count_by_category() == {Category.CARD_METADATA: 1}
        assert await cache_store.clear() == 1
        assert await cache_store.count_by_category() == {}

    async def test_closed_database_raises_storage_error(self, cache_store, db):
        await db.close()
        with pytest.raises(StorageError):
            await cache_store.get("single_price:sv1-25:0")


class TestSqliteQuotaStore:
    def test_satisfies_protocol(self, quota_store):
        assert isinstance(quota_store, QuotaStore)

    async def test_load_missing_returns_none(self, quota_store):
        assert await quota_store.load("justtcg", QuotaPeriod.DAY) is None

    async def test_save_and_load(self, quota_store):
        state = QuotaState(
            provider="justtcg", period=QuotaPeriod.DAY, window_start=T0, used=4, limit=100
        )
        await quota_store.save(state)
        assert await quota_store.load("justtcg", QuotaPeriod.DAY) == state
        assert await quota_store.load("justtcg", QuotaPeriod.MONTH) is None

    async def test_save_upserts(self, quota_store):
        base = QuotaState(
            provider="justtcg", period=QuotaPeriod.DAY, window_start=T0, used=4, limit=100
        )
        await quota_store.save(base)
        await quota_store.save(base.model_copy(update={"used": 5}))
        states = await quota_store.all()
        assert len(states) == 1
        assert states[0].used == 5
