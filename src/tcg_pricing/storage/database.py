"""SQLite connection lifecycle and schema migrations."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import ClassVar

import aiosqlite

from tcg_pricing.core.config import StorageConfig
from tcg_pricing.core.exceptions import StorageError
from tcg_pricing.core.models import StorageBackend

logger = logging.getLogger(__name__)


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 so lexical order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class Database:
    """Shared aiosqlite connection for the cache and quota stores.

    Uses WAL mode so readers never block the single writer, and a
    version-tracked migration system.
    """

    _MIGRATIONS: ClassVar[dict[int, tuple[str, list[str]]]] = {
        1: (
            "Initial schema",
            [
                """CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT DEFAULT (datetime('now'))
                )""",
                """CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    category TEXT NOT NULL,
                    item_identity TEXT NOT NULL,
                    query_params_json TEXT NOT NULL DEFAULT '{}',
                    payload_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    soft_refresh_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    source_provider TEXT NOT NULL,
                    hit_count INTEGER NOT NULL DEFAULT 0,
                    last_hit_at TEXT
                )""",
                """CREATE TABLE IF NOT EXISTS quota_state (
                    provider TEXT NOT NULL,
                    period TEXT NOT NULL,
                    window_start TEXT NOT NULL,
                    used INTEGER NOT NULL DEFAULT 0,
                    quota_limit INTEGER NOT NULL,
                    updated_at TEXT DEFAULT (datetime('now')),
                    PRIMARY KEY (provider, period)
                )""",
                "CREATE INDEX IF NOT EXISTS idx_cache_category ON cache_entries(category)",
                "CREATE INDEX IF NOT EXISTS idx_cache_soft_refresh ON cache_entries(soft_refresh_at)",
                "CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at)",
            ],
        ),
    }

    def __init__(self, config: StorageConfig) -> None:
        self._path = config.sqlite_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError(
                "Database is not initialized",
                context={"operation": "connect", "path": self._path},
            )
        return self._conn

    async def initialize(self) -> None:
        """Open connection, enable WAL, run migrations."""
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(self._path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            current = await self._get_schema_version()
            await self._apply_migrations(current)
            await self._conn.commit()
        except Exception as e:
            raise StorageError(
                f"Failed to initialize SQLite store: {e}",
                context={"operation": "initialize", "path": self._path},
            ) from e

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def health_check(self) -> bool:
        if self._conn is None:
            return False
        try:
            async with self._conn.execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
            return row is not None
        except aiosqlite.Error:
            return False

    # --- Schema Migration ---

    async def _get_schema_version(self) -> int:
        try:
            async with self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
            return row[0] if row[0] is not None else 0
        except aiosqlite.OperationalError:
            return 0

    async def _apply_migrations(self, current_version: int) -> None:
        for version in sorted(self._MIGRATIONS.keys()):
            if version <= current_version:
                continue
            desc, statements = self._MIGRATIONS[version]
            logger.info("Applying migration %d: %s", version, desc)
            for sql in statements:
                await self.conn.execute(sql)
            await self.conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )


async def create_database(config: StorageConfig) -> Database:
    """Create and initialize a storage backend based on configuration."""
    if config.backend == StorageBackend.SQLITE:
        db = Database(config)
        await db.initialize()
        return db
    raise StorageError(
        f"Unsupported storage backend: {config.backend}",
        context={"operation": "create_database", "backend": str(config.backend)},
    )
