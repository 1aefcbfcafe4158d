"""Persisted per-provider, per-period quota counters."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import aiosqlite

from tcg_pricing.core.exceptions import StorageError
from tcg_pricing.core.models import ProviderName, QuotaPeriod, QuotaState
from tcg_pricing.storage.database import Database, from_db_time, to_db_time

logger = logging.getLogger(__name__)


@runtime_checkable
class QuotaStore(Protocol):
    async def load(
        self, provider: ProviderName, period: QuotaPeriod
    ) -> QuotaState | None: ...
    async def save(self, state: QuotaState) -> None: ...
    async def all(self) -> list[QuotaState]: ...


class SqliteQuotaStore:
    """Quota rows keyed by (provider, period) so counts survive restarts."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def load(
        self, provider: ProviderName, period: QuotaPeriod
    ) -> QuotaState | None:
        try:
            async with self._db.conn.execute(
                """SELECT provider, period, window_start, used, quota_limit
                   FROM quota_state WHERE provider = ? AND period = ?""",
                (provider, str(period)),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to load quota state: {e}",
                context={"operation": "query", "table": "quota_state", "provider": provider},
            ) from e
        return self._row_to_state(row) if row is not None else None

    async def save(self, state: QuotaState) -> None:
        try:
            await self._db.conn.execute(
                """INSERT INTO quota_state
                       (provider, period, window_start, used, quota_limit, updated_at)
                   VALUES (?, ?, ?, ?, ?, datetime('now'))
                   ON CONFLICT(provider, period) DO UPDATE SET
                       window_start = excluded.window_start,
                       used = excluded.used,
                       quota_limit = excluded.quota_limit,
                       updated_at = excluded.updated_at""",
                (
                    state.provider,
                    str(state.period),
                    to_db_time(state.window_start),
                    state.used,
                    state.limit,
                ),
            )
            await self._db.conn.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to save quota state: {e}",
                context={"operation": "upsert", "table": "quota_state", "provider": state.provider},
            ) from e

    async def all(self) -> list[QuotaState]:
        try:
            async with self._db.conn.execute(
                """SELECT provider, period, window_start, used, quota_limit
                   FROM quota_state ORDER BY provider, period"""
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(
                f"Failed to list quota state: {e}",
                context={"operation": "query", "table": "quota_state"},
            ) from e
        return [self._row_to_state(r) for r in rows]

    @staticmethod
    def _row_to_state(row: aiosqlite.Row) -> QuotaState:
        return QuotaState(
            provider=row["provider"],
            period=QuotaPeriod(row["period"]),
            window_start=from_db_time(row["window_start"]),
            used=row["used"],
            limit=row["quota_limit"],
        )
