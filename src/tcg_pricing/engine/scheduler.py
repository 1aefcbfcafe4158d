"""Refresh Scheduler: renew popular entries before they hard-expire.

One cooperative asyncio task. Each tick takes entries past their soft
refresh point (most hit first), refreshes at most
``max_refreshes_per_tick`` of them through the resolver at background
priority, and every ``sweep_every_ticks`` ticks garbage-collects
expired, idle entries. It shares nothing with request handling except
the cache store and the resolver's in-flight registry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from tcg_pricing.core.config import SchedulerConfig
from tcg_pricing.core.models import CacheKey, utc_now
from tcg_pricing.engine.resolver import Resolver
from tcg_pricing.storage.cache_store import CacheStore

logger = logging.getLogger(__name__)

# How many due rows to read per unit of budget; the rest may be in backoff.
_CANDIDATE_FACTOR = 4


@dataclass
class TickReport:
    due: int = 0
    attempted: int = 0
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0
    swept: int = 0


class RefreshScheduler:
    def __init__(
        self,
        cache: CacheStore,
        resolver: Resolver,
        config: SchedulerConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._cache = cache
        self._resolver = resolver
        self._config = config
        self._clock = clock
        self._last_attempt: dict[CacheKey, datetime] = {}
        self._ticks = 0
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> TickReport:
        """Run one bounded refresh pass, then sweep if this tick is due."""
        now = self._clock()
        budget = self._config.max_refreshes_per_tick
        retry_after = timedelta(seconds=self._config.retry_after_seconds)

        self._last_attempt = {
            key: at for key, at in self._last_attempt.items() if now - at < retry_after
        }
        candidates = await self._cache.due_for_refresh(now, budget * _CANDIDATE_FACTOR)
        chosen = [e for e in candidates if e.key not in self._last_attempt][:budget]

        report = TickReport(due=len(candidates), attempted=len(chosen))
        if chosen:
            for entry in chosen:
                self._last_attempt[entry.key] = now
            result = await self._resolver.refresh_many(e.to_request() for e in chosen)
            report.refreshed = len(result.refreshed)
            report.failed = len(result.failed)
            report.skipped = len(result.skipped)
            logger.info(
                "Refresh tick: %d due, %d attempted, %d refreshed, %d failed",
                report.due, report.attempted, report.refreshed, report.failed,
            )

        self._ticks += 1
        if self._ticks % self._config.sweep_every_ticks == 0:
            report.swept = await self._cache.sweep_expired(
                now, timedelta(seconds=self._config.sweep_idle_seconds)
            )
        return report

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Tick every ``tick_seconds`` until ``stop_event`` is set."""
        stop = stop_event or self._stop_event
        logger.info("Refresh scheduler started (every %.0fs)", self._config.tick_seconds)
        while not stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Refresh tick failed; retrying next tick")
            try:
                async with asyncio.timeout(self._config.tick_seconds):
                    await stop.wait()
            except TimeoutError:
                continue
        logger.info("Refresh scheduler stopped")

    def start(self) -> asyncio.Task | None:
        """Launch ``run`` as a background task. No-op when disabled."""
        if not self._config.enabled:
            logger.info("Refresh scheduler disabled by configuration")
            return None
        if self.running:
            return self._task
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(self._stop_event))
        return self._task

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
