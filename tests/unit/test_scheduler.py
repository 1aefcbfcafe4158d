"""Tests for tcg_pricing.engine.scheduler."""

import asyncio
from datetime import timedelta

import pytest

from conftest import FakeAdapter
from tcg_pricing.core.config import SchedulerConfig
from tcg_pricing.core.exceptions import ItemNotFoundError
from tcg_pricing.core.models import Category, RequestSpec
from tcg_pricing.engine.scheduler import RefreshScheduler


def single(identity: str) -> RequestSpec:
    return RequestSpec(category=Category.SINGLE_PRICE, item_identity=identity)


@pytest.fixture
def make_scheduler(cache_store, clock):
    def _make(resolver, **overrides) -> RefreshScheduler:
        return RefreshScheduler(cache_store, resolver, SchedulerConfig(**overrides), clock=clock)

    return _make


async def _warm(resolver, *identities: str) -> None:
    for identity in identities:
        await resolver.get(single(identity))


class TestTick:
    async def test_nothing_due(self, make_resolver, make_scheduler):
        a = FakeAdapter("a")
        resolver = make_resolver([a])
        await _warm(resolver, "sv1-1")

        report = await make_scheduler(resolver).tick()

        assert report.due == 0
        assert report.attempted == 0
        assert len(a.calls) == 1

    async def test_refreshes_due_entries(self, make_resolver, make_scheduler, cache_store, clock):
        a = FakeAdapter("a")
        resolver = make_resolver([a])
        await _warm(resolver, "sv1-1", "sv1-2")
        clock.advance(hours=21)

        report = await make_scheduler(resolver).tick()

        assert report.due == 2
        assert report.refreshed == 2
        assert len(a.calls) == 4
        entry = await cache_store.get(single("sv1-1").cache_key)
        assert entry.created_at == clock()

    async def test_budget_prefers_popular_entries(self, make_resolver, make_scheduler, clock):
        a = FakeAdapter("a")
        resolver = make_resolver([a])
        await _warm(resolver, "quiet", "popular")
        await resolver.get(single("popular"))
        await resolver.get(single("popular"))
        clock.advance(hours=21)
        a.calls.clear()

        report = await make_scheduler(resolver, max_refreshes_per_tick=1).tick()

        assert report.due == 2
        assert report.attempted == 1
        assert [r.item_identity for r in a.calls] == ["popular"]

    async def test_failed_key_backs_off(self, make_resolver, make_scheduler, clock):
        a = FakeAdapter("a")
        resolver = make_resolver([a])
        await _warm(resolver, "sv1-1")
        clock.advance(hours=21)
        a.error = ItemNotFoundError("gone")
        scheduler = make_scheduler(resolver, retry_after_seconds=600)

        first = await scheduler.tick()
        second = await scheduler.tick()
        clock.advance(minutes=11)
        third = await scheduler.tick()

        assert first.failed == 1
        assert second.attempted == 0
        assert third.attempted == 1

    async def test_sweeps_on_schedule(self, make_resolver, make_scheduler, cache_store, clock):
        a = FakeAdapter("a")
        resolver = make_resolver([a])
        await _warm(resolver, "sv1-1")
        clock.advance(hours=30)
        scheduler = make_scheduler(resolver, sweep_every_ticks=2, sweep_idle_seconds=60)

        first = await scheduler.tick()
        second = await scheduler.tick()

        assert first.swept == 0
        assert second.swept == 1
        assert await cache_store.get(single("sv1-1").cache_key) is None

    async def test_expired_entries_are_not_refreshed(self, make_resolver, make_scheduler, clock):
        a = FakeAdapter("a")
        resolver = make_resolver([a])
        await _warm(resolver, "sv1-1")
        clock.advance(hours=25)
        report = await make_scheduler(resolver).tick()
        assert report.due == 0
        assert len(a.calls) == 1


class TestLifecycle:
    async def test_disabled_scheduler_does_not_start(self, make_resolver, make_scheduler):
        scheduler = make_scheduler(make_resolver([FakeAdapter("a")]), enabled=False)
        assert scheduler.start() is None
        assert not scheduler.running

    async def test_start_and_stop(self, make_resolver, make_scheduler, clock):
        a = FakeAdapter("a")
        resolver = make_resolver([a])
        await _warm(resolver, "sv1-1")
        clock.advance(hours=21)
        scheduler = make_scheduler(resolver, tick_seconds=3600)

        task = scheduler.start()
        assert scheduler.start() is task
        for _ in range(50):
            if len(a.calls) == 2:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert len(a.calls) == 2
        assert not scheduler.running

    async def test_run_stops_on_external_event(self, make_resolver, make_scheduler):
        scheduler = make_scheduler(make_resolver([FakeAdapter("a")]), tick_seconds=0.01)
        stop = asyncio.Event()
        runner = asyncio.create_task(scheduler.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(runner, timeout=1)
        assert runner.done()

    async def test_run_survives_unexpected_tick_error(self, make_resolver, make_scheduler):
        scheduler = make_scheduler(make_resolver([FakeAdapter("a")]), tick_seconds=0.01)
        ticks = 0

        async def flaky_tick():
            nonlocal ticks
            ticks += 1
            if ticks == 1:
                raise ValueError("could not convert string to float: 'N/A'")

        scheduler.tick = flaky_tick
        stop = asyncio.Event()
        runner = asyncio.create_task(scheduler.run(stop))
        for _ in range(100):
            if ticks >= 2:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(runner, timeout=1)

        assert ticks >= 2
        assert runner.exception() is None
