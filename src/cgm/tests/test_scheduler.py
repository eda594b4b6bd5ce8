"""Tests for the fetch scheduler: triggers, fork-join fetch and the serial worker."""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import pytest

from src.cgm.base import FetchTrigger
from src.cgm.collaborators import LoggingKeepAlive
from src.cgm.reconciler import Reconciler
from src.cgm.resolver import SourceResolver
from src.cgm.scheduler import CycleRequest, FetchScheduler
from src.cgm.sources import SourceDependencies, UnknownSourceError
from src.cgm.tests.conftest import T0, StaticSource, make_config, make_reading


class ConcurrencyKeepAlive(LoggingKeepAlive):
    """Records the highest number of simultaneously held tokens."""

    def __init__(self) -> None:
        super().__init__()
        self.max_active = 0

    def begin(self, name: str) -> int:
        token = super().begin(name)
        self.max_active = max(self.max_active, len(self.active))
        return token


@pytest.fixture
def source() -> StaticSource:
    return StaticSource([make_reading(0), make_reading(5)])


@pytest.fixture
def resolver(channel, tmp_path, source) -> SourceResolver:
    return SourceResolver(
        channel,
        SourceDependencies(shared_dir=tmp_path),
        factory=lambda config, deps: source,
    )


@pytest.fixture
def scheduler(resolver, reconciler, store, health) -> FetchScheduler:
    return FetchScheduler(resolver, reconciler, store, health, interval_seconds=3600)


# ---------------------------------------------------------------------------
# Single cycles
# ---------------------------------------------------------------------------


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_timer_cycle_fetches_and_stores(self, scheduler, source, store) -> None:
        result = await scheduler.run_cycle(CycleRequest(FetchTrigger("timer")))

        assert result.status == "stored"
        assert [t.reason for t in source.fetch_triggers] == ["timer"]
        assert len(store.recent()) == 2
        assert scheduler.last_result is result

    @pytest.mark.asyncio
    async def test_refresh_uses_fetch_if_needed(self, scheduler, source) -> None:
        await scheduler.run_cycle(CycleRequest(FetchTrigger("refresh")))
        assert source.fetch_if_needed_calls == 1
        assert source.fetch_triggers == []

    @pytest.mark.asyncio
    async def test_push_cycle_skips_fetch(self, scheduler, source, store) -> None:
        pushed = [make_reading(20)]
        result = await scheduler.run_cycle(CycleRequest(FetchTrigger("push"), pushed))

        assert result.delta == pushed
        assert source.fetch_triggers == []
        assert store.sync_cursor() == T0 + timedelta(minutes=20)

    @pytest.mark.asyncio
    async def test_health_readings_are_merged(self, scheduler, health, store) -> None:
        health.readings = [make_reading(10, source="healthkit", id="hk-10")]
        await scheduler.run_cycle(CycleRequest(FetchTrigger("timer")))
        assert "hk-10" in {r.id for r in store.recent()}

    @pytest.mark.asyncio
    async def test_health_failure_does_not_block_primary(self, scheduler, health, store) -> None:
        health.fail_fetch = True
        result = await scheduler.run_cycle(CycleRequest(FetchTrigger("timer")))
        assert result.status == "stored"
        assert len(store.recent()) == 2

    @pytest.mark.asyncio
    async def test_failing_source_keeps_partial_batch(self, scheduler, source, store) -> None:
        source.fail_after = 1
        result = await scheduler.run_cycle(CycleRequest(FetchTrigger("timer")))
        assert result.status == "stored"
        assert [r.timestamp for r in store.recent()] == [T0]

    @pytest.mark.asyncio
    async def test_source_failing_immediately_is_empty_cycle(
        self, scheduler, source, store
    ) -> None:
        source.fail_after = 0
        result = await scheduler.run_cycle(CycleRequest(FetchTrigger("timer")))
        assert result.status == "empty"
        assert store.recent() == []

    def test_source_info_reports_active_source(self, scheduler) -> None:
        assert scheduler.source_info() == {"type": "static"}


# ---------------------------------------------------------------------------
# Worker lifecycle
# ---------------------------------------------------------------------------


class TestWorker:
    @pytest.mark.asyncio
    async def test_start_runs_startup_cycle(self, scheduler, source, store) -> None:
        await scheduler.start()
        try:
            assert scheduler.running
            await scheduler.drain()
        finally:
            await scheduler.stop()

        assert not scheduler.running
        assert [t.reason for t in source.fetch_triggers] == ["startup"]
        assert len(store.recent()) == 2

    @pytest.mark.asyncio
    async def test_timer_queues_cycles(self, resolver, reconciler, store, health, source) -> None:
        scheduler = FetchScheduler(resolver, reconciler, store, health, interval_seconds=0.01)
        await scheduler.start()
        try:
            await asyncio.sleep(0.1)
        finally:
            await scheduler.stop()
        assert "timer" in {t.reason for t in source.fetch_triggers}

    @pytest.mark.asyncio
    async def test_cycles_run_one_at_a_time(
        self, resolver, store, channel, heartbeat, cloud, health, clock
    ) -> None:
        keep_alive = ConcurrencyKeepAlive()
        reconciler = Reconciler(store, channel, heartbeat, cloud, health, keep_alive, clock=clock)
        scheduler = FetchScheduler(resolver, reconciler, store, health, interval_seconds=3600)

        await scheduler.start()
        try:
            for _ in range(5):
                scheduler.refresh_now()
            await scheduler.drain()
        finally:
            await scheduler.stop()

        assert keep_alive.max_active == 1
        assert keep_alive.active == set()
        assert len(store.recent()) == 2

    @pytest.mark.asyncio
    async def test_worker_survives_failed_cycle(
        self, channel, tmp_path, reconciler, store, health
    ) -> None:
        source = StaticSource([make_reading(0)])
        attempts: list[int] = []

        def flaky_factory(config, deps):
            attempts.append(1)
            if len(attempts) == 1:
                raise UnknownSourceError("not configured")
            return source

        resolver = SourceResolver(
            channel, SourceDependencies(shared_dir=tmp_path), factory=flaky_factory
        )
        scheduler = FetchScheduler(resolver, reconciler, store, health, interval_seconds=3600)
        await scheduler.start()
        try:
            await scheduler.drain()
            scheduler.refresh_now()
            await scheduler.drain()
        finally:
            await scheduler.stop()

        assert len(attempts) == 2
        assert len(store.recent()) == 1


# ---------------------------------------------------------------------------
# Hardware push and transmitter reconfiguration
# ---------------------------------------------------------------------------


class TestPushPath:
    @pytest.fixture
    def hardware_scheduler(self, channel, tmp_path, reconciler, store, health) -> FetchScheduler:
        resolver = SourceResolver(channel, SourceDependencies(shared_dir=tmp_path))
        return FetchScheduler(resolver, reconciler, store, health, interval_seconds=3600)

    @pytest.mark.asyncio
    async def test_push_from_driver_thread(self, hardware_scheduler, store) -> None:
        await hardware_scheduler.start()
        try:
            await hardware_scheduler.drain()
            transmitter = hardware_scheduler._resolver.active

            thread = threading.Thread(target=transmitter.receive, args=([make_reading(0)],))
            thread.start()
            thread.join()
            await asyncio.sleep(0)
            await hardware_scheduler.drain()
        finally:
            await hardware_scheduler.stop()

        assert [r.timestamp for r in store.recent()] == [T0]

    @pytest.mark.asyncio
    async def test_transmitter_change_mid_run(
        self, hardware_scheduler, channel, store
    ) -> None:
        await hardware_scheduler.start()
        try:
            await hardware_scheduler.drain()
            old = hardware_scheduler._resolver.active
            assert old.transmitter_id == "8G1234"

            old.receive([make_reading(0)])
            await hardware_scheduler.drain()

            channel.publish(make_config(cgm="dexcom_g6", transmitter_id="8GNEW1"))
            hardware_scheduler.refresh_now()
            await hardware_scheduler.drain()
            new = hardware_scheduler._resolver.active

            old.receive([make_reading(10, 200)])
            new.receive([make_reading(5)])
            await hardware_scheduler.drain()
        finally:
            await hardware_scheduler.stop()

        assert new is not old
        assert new.transmitter_id == "8GNEW1"
        assert old.released
        assert [r.timestamp for r in store.recent()] == [T0, T0 + timedelta(minutes=5)]
