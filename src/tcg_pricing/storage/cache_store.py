"""Cache Store: durable key -> entry mapping with expiry metadata."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

import aiosqlite
from pydantic import TypeAdapter

from tcg_pricing.core.exceptions import StorageError
from tcg_pricing.core.models import CacheEntry, CacheKey, Category, Payload
from tcg_pricing.storage.database import Database, from_db_time, to_db_time

logger = logging.getLogger(__name__)

_payload_adapter: TypeAdapter[Payload] = TypeAdapter(Payload)


@runtime_checkable
class CacheStore(Protocol):
    """Persistence protocol consumed by the resolver and scheduler."""

    async def get(self, key: CacheKey) -> CacheEntry | None: ...
    async def put(self, entry: CacheEntry) -> None: ...
    async def record_hit(self, key: CacheKey, now: datetime) -> None: ...
    async def due_for_refresh(
        self, now: datetime, limit: int
    ) -> list[CacheEntry]: ...
    async def sweep_expired(
        self, now: datetime, idle_grace: timedelta = timedelta(0)
    ) -> int: ...
    async def delete(self, key: CacheKey) -> bool: ...
    async def clear(self, category: Category | None = None) -> int: ...
    async def count_by_category(self) -> dict[Category, int]: ...


class SqliteCacheStore:
    """SQLite implementation of the cache store.

    ``put`` is a single INSERT ... ON CONFLICT statement followed by a
    commit, so a reader sees either the old row or the new one.
    """

    _COLUMNS = (
        "key, category, item_identity, query_params_json, payload_json, "
        "created_at, soft_refresh_at, expires_at, source_provider, "
        "hit_count, last_hit_at"
    )

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get(self, key: CacheKey) -> CacheEntry | None:
        try:
            async with self._db.conn.execute(
                f"SELECT {self._COLUMNS} FROM cache_entries WHERE key = ?",
                (key,),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to read cache entry: {e}",
                context={"operation": "query", "table": "cache_entries", "key": key},
            ) from e
        return self._row_to_entry(row) if row is not None else None

    async def put(self, entry: CacheEntry) -> None:
        """Upsert by key.

        The row is replaced except for popularity: ``hit_count`` and
        ``last_hit_at`` never move backwards.
        """
        try:
            await self._db.conn.execute(
                f"""INSERT INTO cache_entries ({self._COLUMNS})
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       category = excluded.category,
                       item_identity = excluded.item_identity,
                       query_params_json = excluded.query_params_json,
                       payload_json = excluded.payload_json,
                       created_at = excluded.created_at,
                       soft_refresh_at = excluded.soft_refresh_at,
                       expires_at = excluded.expires_at,
                       source_provider = excluded.source_provider,
                       hit_count = MAX(cache_entries.hit_count, excluded.hit_count),
                       last_hit_at = COALESCE(
                           MAX(cache_entries.last_hit_at, excluded.last_hit_at),
                           cache_entries.last_hit_at,
                           excluded.last_hit_at
                       )""",
                (
                    entry.key,
                    str(entry.category),
                    entry.item_identity,
                    json.dumps(entry.query_params, sort_keys=True),
                    entry.payload.model_dump_json(),
                    to_db_time(entry.created_at),
                    to_db_time(entry.soft_refresh_at),
                    to_db_time(entry.expires_at),
                    entry.source_provider,
                    entry.hit_count,
                    to_db_time(entry.last_hit_at) if entry.last_hit_at else None,
                ),
            )
            await self._db.conn.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to upsert cache entry: {e}",
                context={"operation": "upsert", "table": "cache_entries", "key": entry.key},
            ) from e

    async def record_hit(self, key: CacheKey, now: datetime) -> None:
        try:
            await self._db.conn.execute(
                """UPDATE cache_entries
                   SET hit_count = hit_count + 1, last_hit_at = ?
                   WHERE key = ?""",
                (to_db_time(now), key),
            )
            await self._db.conn.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to record cache hit: {e}",
                context={"operation": "update", "table": "cache_entries", "key": key},
            ) from e

    async def due_for_refresh(self, now: datetime, limit: int) -> list[CacheEntry]:
        """Entries past soft refresh but not yet expired, most popular first."""
        stamp = to_db_time(now)
        try:
            async with self._db.conn.execute(
                f"""SELECT {self._COLUMNS} FROM cache_entries
                    WHERE soft_refresh_at <= ? AND expires_at > ?
                    ORDER BY hit_count DESC, soft_refresh_at ASC
                    LIMIT ?""",
                (stamp, stamp, limit),
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to query refresh candidates: {e}",
                context={"operation": "query", "table": "cache_entries"},
            ) from e
        return [self._row_to_entry(r) for r in rows]

    async def sweep_expired(
        self, now: datetime, idle_grace: timedelta = timedelta(0)
    ) -> int:
        """Delete expired entries not hit within ``idle_grace`` of now."""
        idle_cutoff = to_db_time(now - idle_grace)
        try:
            cursor = await self._db.conn.execute(
                """DELETE FROM cache_entries
                   WHERE expires_at <= ?
                     AND (last_hit_at IS NULL OR last_hit_at < ?)""",
                (to_db_time(now), idle_cutoff),
            )
            removed = cursor.rowcount
            await cursor.close()
            await self._db.conn.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to sweep expired entries: {e}",
                context={"operation": "delete", "table": "cache_entries"},
            ) from e
        if removed:
            logger.info("Swept %d expired cache entries", removed)
        return removed

    async def delete(self, key: CacheKey) -> bool:
        try:
            cursor = await self._db.conn.execute(
                "DELETE FROM cache_entries WHERE key = ?", (key,)
            )
            removed = cursor.rowcount
            await cursor.close()
            await self._db.conn.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to delete cache entry: {e}",
                context={"operation": "delete", "table": "cache_entries", "key": key},
            ) from e
        return removed > 0

    async def clear(self, category: Category | None = None) -> int:
        """Remove every entry, or every entry of one category."""
        try:
            if category is None:
                cursor = await self._db.conn.execute("DELETE FROM cache_entries")
            else:
                cursor = await self._db.conn.execute(
                    "DELETE FROM cache_entries WHERE category = ?", (str(category),)
                )
            removed = cursor.rowcount
            await cursor.close()
            await self._db.conn.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to clear cache: {e}",
                context={"operation": "delete", "table": "cache_entries"},
            ) from e
        logger.info("Cleared %d cache entries (category=%s)", removed, category or "all")
        return removed

    async def count_by_category(self) -> dict[Category, int]:
        try:
            async with self._db.conn.execute(
                "SELECT category, COUNT(*) FROM cache_entries GROUP BY category"
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to count cache entries: {e}",
                context={"operation": "query", "table": "cache_entries"},
            ) from e
        return {Category(row[0]): row[1] for row in rows}

    @staticmethod
    def _row_to_entry(row: aiosqlite.Row) -> CacheEntry:
        return CacheEntry(
            key=row["key"],
            category=Category(row["category"]),
            item_identity=row["item_identity"],
            query_params=json.loads(row["query_params_json"]),
            payload=_payload_adapter.validate_json(row["payload_json"]),
            created_at=from_db_time(row["created_at"]),
            soft_refresh_at=from_db_time(row["soft_refresh_at"]),
            expires_at=from_db_time(row["expires_at"]),
            source_provider=row["source_provider"],
            hit_count=row["hit_count"],
            last_hit_at=from_db_time(row["last_hit_at"]),
        )
