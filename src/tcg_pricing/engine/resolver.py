"""Resolver: cache lookup, fallback-chain resolution, write-back.

Request lifecycle
-----------------
1. Look up the cache key. A servable entry is returned at once, tagged
   ``fresh`` or ``stale-but-servable``; a stale hit also schedules one
   background refresh.
2. On a miss (or hard expiry) walk the category's fallback chain in
   configured order: reserve quota, call the adapter under a timeout,
   check the payload shape, record usage, write back.
3. If every provider fails, serve the expired entry as
   ``expired-fallback`` when one exists, else raise
   ``AllProvidersExhaustedError``.

At most one resolution per cache key is in flight. Later callers await
the first caller's future through ``asyncio.shield`` so cancelling a
waiter never cancels the shared work.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from tcg_pricing.core.exceptions import (
    AllProvidersExhaustedError,
    MalformedResponseError,
    NetworkFailureError,
    ProviderError,
    QuotaExceededError,
)
from tcg_pricing.core.models import (
    CATALOG_CATEGORIES,
    PRICE_CATEGORIES,
    CacheEntry,
    CacheKey,
    CacheState,
    CatalogRecord,
    Category,
    Payload,
    PolicyEntry,
    PriceRecord,
    ProviderName,
    RequestPriority,
    RequestSpec,
    Resolution,
    SearchResult,
    utc_now,
)
from tcg_pricing.engine.metrics import CacheMetrics
from tcg_pricing.engine.policy import PolicyRegistry
from tcg_pricing.engine.quota import QuotaTracker, Reservation
from tcg_pricing.providers.base import (
    BatchFetchResult,
    BatchProviderAdapter,
    FetchResult,
    ProviderAdapter,
    supports_batch,
)
from tcg_pricing.storage.cache_store import CacheStore

logger = logging.getLogger(__name__)


@dataclass
class RefreshReport:
    """Outcome of one ``refresh_many`` call, by cache key."""

    refreshed: list[CacheKey] = field(default_factory=list)
    failed: list[CacheKey] = field(default_factory=list)
    skipped: list[CacheKey] = field(default_factory=list)


@dataclass
class _Flight:
    future: asyncio.Future[Resolution]
    priority: RequestPriority


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class Resolver:
    """Orchestrates cache, policy, quota, and provider adapters."""

    def __init__(
        self,
        cache: CacheStore,
        policies: PolicyRegistry,
        quota: QuotaTracker,
        adapters: Mapping[ProviderName, ProviderAdapter],
        chains: Mapping[Category, Sequence[ProviderName]],
        *,
        metrics: CacheMetrics | None = None,
        foreground_timeout: float = 10.0,
        background_timeout: float = 4.0,
        background_headroom: float = 0.1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._cache = cache
        self._policies = policies
        self._quota = quota
        self._adapters = dict(adapters)
        self._chains = {Category(c): list(names) for c, names in chains.items()}
        self._metrics = metrics or CacheMetrics()
        self._foreground_timeout = foreground_timeout
        self._background_timeout = background_timeout
        self._background_headroom = background_headroom
        self._clock = clock
        self._in_flight: dict[CacheKey, _Flight] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def metrics(self) -> CacheMetrics:
        return self._metrics

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def chain_for(self, category: Category) -> list[ProviderName]:
        """Configured providers for a category that have a live adapter."""
        return [n for n in self._chains.get(category, []) if n in self._adapters]

    # --- Caller boundary ---

    async def get(self, request: RequestSpec) -> Resolution:
        """Resolve a request, preferring the cache.

        Raises:
            ConfigError: unknown category.
            AllProvidersExhaustedError: chain failed and nothing is cached.
        """
        policy = self._policies.policy_for(request.category)
        key = request.cache_key
        now = self._clock()
        entry = await self._cache.get(key)

        if entry is not None and entry.is_servable(now):
            await self._cache.record_hit(key, now)
            if entry.is_fresh(now):
                state = CacheState.FRESH
            else:
                state = CacheState.STALE_SERVABLE
                self._schedule_refresh(request)
            logger.debug("Cache %s for %s", state, key)
            self._metrics.record_state(state, policy.credit_cost)
            return Resolution.from_entry(entry, state)

        flight, owner = self._join(request, RequestPriority.FOREGROUND)
        if not owner:
            logger.debug("Joining in-flight resolution for %s", key)
            self._metrics.record_coalesced(policy.credit_cost)
        try:
            resolution = await asyncio.shield(flight.future)
            if owner:
                self._metrics.record_state(resolution.cache_state, policy.credit_cost)
            return resolution
        except AllProvidersExhaustedError:
            if flight.priority == RequestPriority.BACKGROUND:
                # Retry once at foreground timeout and headroom.
                retry, _ = self._join(request, RequestPriority.FOREGROUND)
                try:
                    resolution = await asyncio.shield(retry.future)
                    self._metrics.record_state(resolution.cache_state, policy.credit_cost)
                    return resolution
                except AllProvidersExhaustedError:
                    pass
            if entry is None:
                if owner:
                    self._metrics.record_exhausted()
                raise
            await self._cache.record_hit(key, self._clock())
            if owner:
                self._metrics.record_state(CacheState.EXPIRED_FALLBACK, policy.credit_cost)
            logger.warning(
                "All providers failed for %s; serving expired entry from %s",
                key, entry.source_provider,
            )
            return Resolution.from_entry(entry, CacheState.EXPIRED_FALLBACK)

    async def refresh(self, request: RequestSpec) -> Resolution:
        """Run the miss path at background priority, sharing any in-flight work."""
        self._policies.policy_for(request.category)
        flight, _ = self._join(request, RequestPriority.BACKGROUND)
        return await asyncio.shield(flight.future)

    async def refresh_many(self, requests: Iterable[RequestSpec]) -> RefreshReport:
        """Background-refresh many keys, batching where the primary provider can.

        Keys already being resolved are skipped. Keys a batch could not
        price fall back to the rest of their chain individually.
        """
        report = RefreshReport()
        batches: defaultdict[tuple[ProviderName, Category], list[tuple[RequestSpec, _Flight]]] = (
            defaultdict(list)
        )
        waits: list[tuple[CacheKey, asyncio.Future[Resolution]]] = []
        unique: dict[CacheKey, RequestSpec] = {}
        for request in requests:
            self._policies.policy_for(request.category)
            unique.setdefault(request.cache_key, request)

        for key, request in unique.items():
            if key in self._in_flight:
                report.skipped.append(key)
                continue
            chain = self.chain_for(request.category)
            if chain and supports_batch(self._adapters[chain[0]], request.category):
                flight = self._register(key, RequestPriority.BACKGROUND)
                batches[(chain[0], request.category)].append((request, flight))
            else:
                flight, _ = self._join(request, RequestPriority.BACKGROUND)
            self._metrics.record_refresh_scheduled()
            waits.append((key, flight.future))

        for (provider, _), members in batches.items():
            size = max(self._adapters[provider].batch_size, 1)
            for start in range(0, len(members), size):
                self._spawn(self._run_batch(provider, members[start : start + size]))

        outcomes = await asyncio.gather(
            *(asyncio.shield(future) for _, future in waits), return_exceptions=True
        )
        for (key, _), outcome in zip(waits, outcomes):
            if isinstance(outcome, AllProvidersExhaustedError):
                report.failed.append(key)
                self._metrics.record_refresh_result(False)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                report.refreshed.append(key)
                self._metrics.record_refresh_result(True)
        return report

    async def drain(self) -> None:
        """Wait for background work spawned so far, and anything it spawns."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel outstanding background work."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # --- In-flight registry ---

    def _register(self, key: CacheKey, priority: RequestPriority) -> _Flight:
        future: asyncio.Future[Resolution] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        flight = _Flight(future=future, priority=priority)
        self._in_flight[key] = flight
        return flight

    def _join(
        self,
        request: RequestSpec,
        priority: RequestPriority,
        skip: frozenset[ProviderName] = frozenset(),
    ) -> tuple[_Flight, bool]:
        """Return (flight, owner). Only the owner starts provider work."""
        existing = self._in_flight.get(request.cache_key)
        if existing is not None:
            return existing, False
        flight = self._register(request.cache_key, priority)
        self._spawn(self._fulfil(request, flight, skip))
        return flight, True

    def _settle(
        self, key: CacheKey, flight: _Flight, outcome: Resolution | Exception
    ) -> None:
        if self._in_flight.get(key) is flight:
            del self._in_flight[key]
        if flight.future.done():
            return
        if isinstance(outcome, Exception):
            flight.future.set_exception(outcome)
        else:
            flight.future.set_result(outcome)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fulfil(
        self,
        request: RequestSpec,
        flight: _Flight,
        skip: frozenset[ProviderName] = frozenset(),
    ) -> None:
        key = request.cache_key
        try:
            resolution = await self._walk_chain(request, flight.priority, skip)
        except asyncio.CancelledError:
            if self._in_flight.get(key) is flight:
                del self._in_flight[key]
            flight.future.cancel()
            raise
        except Exception as e:
            self._settle(key, flight, e)
        else:
            self._settle(key, flight, resolution)

    # --- Background refresh ---

    def _schedule_refresh(self, request: RequestSpec) -> None:
        if request.cache_key in self._in_flight:
            return
        self._metrics.record_refresh_scheduled()
        self._spawn(self._background_refresh(request))

    async def _background_refresh(self, request: RequestSpec) -> None:
        try:
            await self.refresh(request)
        except AllProvidersExhaustedError as e:
            logger.info("Background refresh of %s found no provider: %s", request.cache_key, e)
            self._metrics.record_refresh_result(False)
        except Exception:
            logger.exception("Background refresh of %s failed", request.cache_key)
            self._metrics.record_refresh_result(False)
        else:
            self._metrics.record_refresh_result(True)

    # --- Fallback chain ---

    async def _walk_chain(
        self,
        request: RequestSpec,
        priority: RequestPriority,
        skip: frozenset[ProviderName] = frozenset(),
    ) -> Resolution:
        key = request.cache_key
        policy = self._policies.policy_for(request.category)
        background = priority == RequestPriority.BACKGROUND
        timeout = self._background_timeout if background else self._foreground_timeout
        headroom = self._background_headroom if background else 0.0
        attempts: list[dict[str, str]] = []

        for name in self.chain_for(request.category):
            if name in skip:
                attempts.append({"provider": name, "outcome": "batch_failed"})
                continue
            adapter = self._adapters[name]
            if request.category not in adapter.categories:
                attempts.append({"provider": name, "outcome": "unsupported"})
                continue
            try:
                reservation = await self._quota.try_reserve(name, headroom)
            except QuotaExceededError as e:
                logger.info(
                    "Skipping %s for category=%s key=%s: %s",
                    name, request.category, key, e,
                )
                self._metrics.record_quota_skip(name)
                attempts.append({"provider": name, "outcome": "quota_exceeded"})
                continue

            current = await self._cache.get(key)
            if current is not None and current.is_fresh(self._clock()):
                await self._quota.release(reservation)
                return Resolution.from_entry(current, CacheState.FRESH)

            self._metrics.record_provider_call(name)
            try:
                result = await self._call(adapter, request, timeout)
                self._check_shape(request, result.payload, name, result)
            except ProviderError as e:
                await self._settle_failure(reservation, e)
                self._metrics.record_provider_error(name)
                logger.warning(
                    "Provider %s failed (%s) for category=%s key=%s: %s",
                    name, e.kind, request.category, key, e,
                )
                attempts.append({"provider": name, "outcome": str(e.kind)})
                continue

            await self._quota.record_usage(reservation, result.quota)
            entry = await self._write(request, result.payload, name, policy, current)
            logger.info("Resolved %s via %s (%s)", key, name, priority)
            return Resolution.from_entry(entry, CacheState.MISS_RESOLVED)

        raise AllProvidersExhaustedError(
            f"No provider could resolve {key}",
            context={"key": key, "category": str(request.category), "attempts": attempts},
        )

    async def _call(
        self, adapter: ProviderAdapter, request: RequestSpec, timeout: float
    ) -> FetchResult:
        try:
            async with asyncio.timeout(timeout):
                return await adapter.fetch(request)
        except TimeoutError as e:
            raise NetworkFailureError(
                f"{adapter.name} timed out after {timeout}s",
                context={"provider": adapter.name, "timeout": timeout},
                consumed_quota=True,
            ) from e

    async def _call_batch(
        self, adapter: BatchProviderAdapter, requests: Sequence[RequestSpec]
    ) -> BatchFetchResult:
        try:
            async with asyncio.timeout(self._background_timeout):
                return await adapter.fetch_batch(requests)
        except TimeoutError as e:
            raise NetworkFailureError(
                f"{adapter.name} batch timed out after {self._background_timeout}s",
                context={"provider": adapter.name, "timeout": self._background_timeout},
                consumed_quota=True,
            ) from e

    async def _settle_failure(self, reservation: Reservation, error: ProviderError) -> None:
        if error.consumed_quota:
            await self._quota.record_usage(reservation, error.quota)
            return
        await self._quota.release(reservation)
        if error.quota:
            await self._quota.reconcile(reservation.provider, error.quota)

    @staticmethod
    def _check_shape(
        request: RequestSpec,
        payload: Payload,
        provider: ProviderName,
        result: FetchResult | None = None,
    ) -> None:
        """Reject payloads whose kind does not match the category."""
        category = request.category
        problem: str | None = None
        if category in PRICE_CATEGORIES:
            if not isinstance(payload, PriceRecord):
                problem = f"expected a price record, got {payload.kind}"
            elif category == Category.SEALED_PRICE and not payload.is_sealed:
                problem = "sealed product must have exactly one 'sealed' tier"
        elif category in CATALOG_CATEGORIES:
            if not isinstance(payload, CatalogRecord):
                problem = f"expected a catalog record, got {payload.kind}"
        elif category == Category.SEARCH_RESULT and not isinstance(payload, SearchResult):
            problem = f"expected a search result, got {payload.kind}"
        if problem is not None:
            raise MalformedResponseError(
                f"{provider}: {problem}",
                context={"provider": provider, "category": str(category)},
                quota=result.quota if result is not None else (),
            )

    async def _write(
        self,
        request: RequestSpec,
        payload: Payload,
        provider: ProviderName,
        policy: PolicyEntry,
        previous: CacheEntry | None,
    ) -> CacheEntry:
        """Overwrite the entry. Popularity carries over so refresh order is stable."""
        now = self._clock()
        entry = CacheEntry(
            key=request.cache_key,
            category=request.category,
            item_identity=request.item_identity,
            query_params=request.query_params,
            payload=payload,
            created_at=now,
            soft_refresh_at=now + policy.soft_refresh_interval,
            expires_at=now + policy.ttl,
            source_provider=provider,
            hit_count=previous.hit_count if previous is not None else 0,
            last_hit_at=previous.last_hit_at if previous is not None else None,
        )
        await self._cache.put(entry)
        return entry

    # --- Batch refresh ---

    async def _run_batch(
        self, provider: ProviderName, members: list[tuple[RequestSpec, _Flight]]
    ) -> None:
        try:
            leftovers = await self._batch_attempt(provider, members)
            await asyncio.gather(
                *(self._fulfil(r, f, frozenset({provider})) for r, f in leftovers)
            )
        except asyncio.CancelledError:
            for request, flight in members:
                if self._in_flight.get(request.cache_key) is flight:
                    del self._in_flight[request.cache_key]
                flight.future.cancel()
            raise
        except Exception as e:
            for request, flight in members:
                self._settle(request.cache_key, flight, e)

    async def _batch_attempt(
        self, provider: ProviderName, members: list[tuple[RequestSpec, _Flight]]
    ) -> list[tuple[RequestSpec, _Flight]]:
        """One batch call for ``members``. Returns the members it did not settle."""
        adapter = self._adapters[provider]
        now = self._clock()
        pending: list[tuple[RequestSpec, _Flight, CacheEntry | None]] = []
        for request, flight in members:
            current = await self._cache.get(request.cache_key)
            if current is not None and current.is_fresh(now):
                self._settle(
                    request.cache_key, flight, Resolution.from_entry(current, CacheState.FRESH)
                )
            else:
                pending.append((request, flight, current))
        if not pending:
            return []

        try:
            reservation = await self._quota.try_reserve(provider, self._background_headroom)
        except QuotaExceededError as e:
            logger.info("Skipping batch refresh via %s: %s", provider, e)
            self._metrics.record_quota_skip(provider)
            return [(r, f) for r, f, _ in pending]

        self._metrics.record_provider_call(provider)
        try:
            result = await self._call_batch(adapter, [r for r, _, _ in pending])
        except ProviderError as e:
            await self._settle_failure(reservation, e)
            self._metrics.record_provider_error(provider)
            logger.warning(
                "Batch refresh via %s failed (%s) for %d keys: %s",
                provider, e.kind, len(pending), e,
            )
            return [(r, f) for r, f, _ in pending]
        await self._quota.record_usage(reservation, result.quota)

        leftovers: list[tuple[RequestSpec, _Flight]] = []
        for request, flight, current in pending:
            key = request.cache_key
            payload = result.payloads.get(key)
            if payload is not None:
                try:
                    self._check_shape(request, payload, provider)
                except MalformedResponseError as e:
                    logger.warning("Batch payload rejected for %s: %s", key, e)
                    payload = None
            if payload is None:
                if key in result.errors:
                    logger.debug("Batch error for %s: %s", key, result.errors[key])
                leftovers.append((request, flight))
                continue
            policy = self._policies.policy_for(request.category)
            entry = await self._write(request, payload, provider, policy, current)
            self._settle(key, flight, Resolution.from_entry(entry, CacheState.MISS_RESOLVED))
        logger.info(
            "Batch refresh via %s: %d stored, %d falling back",
            provider, len(pending) - len(leftovers), len(leftovers),
        )
        return leftovers
