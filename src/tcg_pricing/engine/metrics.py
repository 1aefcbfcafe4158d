"""Derived cache-effectiveness counters for operational dashboards.

These numbers are advisory: they live in memory, reset on restart, and
are never used to make resolution decisions.
"""

from __future__ import annotations

import time
from collections import Counter

from pydantic import BaseModel, ConfigDict

from tcg_pricing.core.models import CacheState, ProviderName


class MetricsSnapshot(BaseModel):
    """Point-in-time copy of the counters."""

    model_config = ConfigDict(frozen=True)

    fresh_hits: int
    stale_hits: int
    misses: int
    expired_fallbacks: int
    exhausted: int
    coalesced: int
    refreshes_scheduled: int
    refreshes_completed: int
    refreshes_failed: int
    provider_calls: dict[str, int]
    provider_errors: dict[str, int]
    quota_skips: dict[str, int]
    calls_avoided: int
    credits_saved: float
    hit_rate: float
    uptime_seconds: float


class CacheMetrics:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._started = time.monotonic()
        self._states: Counter[CacheState] = Counter()
        self._exhausted = 0
        self._coalesced = 0
        self._refreshes_scheduled = 0
        self._refreshes_completed = 0
        self._refreshes_failed = 0
        self._provider_calls: Counter[str] = Counter()
        self._provider_errors: Counter[str] = Counter()
        self._quota_skips: Counter[str] = Counter()
        self._credits_saved = 0.0

    def record_state(self, state: CacheState, credit_cost: float = 0.0) -> None:
        """Count one answered request. Served-from-cache answers save credits."""
        self._states[state] += 1
        if state != CacheState.MISS_RESOLVED:
            self._credits_saved += credit_cost

    def record_coalesced(self, credit_cost: float = 0.0) -> None:
        self._coalesced += 1
        self._credits_saved += credit_cost

    def record_exhausted(self) -> None:
        self._exhausted += 1

    def record_provider_call(self, provider: ProviderName) -> None:
        self._provider_calls[provider] += 1

    def record_provider_error(self, provider: ProviderName) -> None:
        self._provider_errors[provider] += 1

    def record_quota_skip(self, provider: ProviderName) -> None:
        self._quota_skips[provider] += 1

    def record_refresh_scheduled(self) -> None:
        self._refreshes_scheduled += 1

    def record_refresh_result(self, ok: bool) -> None:
        if ok:
            self._refreshes_completed += 1
        else:
            self._refreshes_failed += 1

    def snapshot(self) -> MetricsSnapshot:
        fresh = self._states[CacheState.FRESH]
        stale = self._states[CacheState.STALE_SERVABLE]
        fallback = self._states[CacheState.EXPIRED_FALLBACK]
        misses = self._states[CacheState.MISS_RESOLVED]
        served_from_cache = fresh + stale + fallback
        total = served_from_cache + misses + self._exhausted
        return MetricsSnapshot(
            fresh_hits=fresh,
            stale_hits=stale,
            misses=misses,
            expired_fallbacks=fallback,
            exhausted=self._exhausted,
            coalesced=self._coalesced,
            refreshes_scheduled=self._refreshes_scheduled,
            refreshes_completed=self._refreshes_completed,
            refreshes_failed=self._refreshes_failed,
            provider_calls=dict(self._provider_calls),
            provider_errors=dict(self._provider_errors),
            quota_skips=dict(self._quota_skips),
            calls_avoided=served_from_cache + self._coalesced,
            credits_saved=round(self._credits_saved, 2),
            hit_rate=round(served_from_cache / total, 4) if total else 0.0,
            uptime_seconds=round(time.monotonic() - self._started, 3),
        )
