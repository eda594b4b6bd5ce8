"""Tests for the default collaborator implementations."""

from __future__ import annotations

from datetime import datetime

import pytest

from src.cgm.collaborators import (
    DeviceHeartbeat,
    DisabledCloudMirror,
    DisabledHealthStore,
    LoggingKeepAlive,
)
from src.cgm.reconciler import Reconciler
from src.cgm.tests.conftest import T0, make_reading


class TestDeviceHeartbeat:
    def test_listeners_receive_heartbeat_time(self) -> None:
        heartbeat = DeviceHeartbeat()
        first: list[datetime] = []
        second: list[datetime] = []
        heartbeat.subscribe(first.append)
        heartbeat.subscribe(second.append)

        heartbeat.heartbeat(T0)

        assert first == [T0]
        assert second == [T0]
        assert heartbeat.last_heartbeat == T0

    @pytest.mark.asyncio
    async def test_stored_glucose_wakes_subscriber(
        self, store, channel, health, keep_alive, clock
    ) -> None:
        heartbeat = DeviceHeartbeat()
        woken: list[datetime] = []
        heartbeat.subscribe(woken.append)
        reconciler = Reconciler(
            store, channel, heartbeat, DisabledCloudMirror(), health, keep_alive, clock=clock
        )

        await reconciler.reconcile([], [], store.sync_cursor())
        assert woken == []

        await reconciler.reconcile([make_reading(0)], [], store.sync_cursor())
        assert woken == [clock()]


class TestLoggingKeepAlive:
    def test_tokens_are_unique_and_released(self) -> None:
        keep_alive = LoggingKeepAlive()
        a = keep_alive.begin("cycle")
        b = keep_alive.begin("cycle")
        assert a != b
        assert keep_alive.active == {a, b}

        keep_alive.end(a)
        keep_alive.end(b)
        assert keep_alive.active == set()

    def test_ending_twice_raises(self) -> None:
        keep_alive = LoggingKeepAlive()
        token = keep_alive.begin("cycle")
        keep_alive.end(token)
        with pytest.raises(RuntimeError, match="already ended"):
            keep_alive.end(token)


class TestDisabledCollaborators:
    @pytest.mark.asyncio
    async def test_disabled_health_store_is_empty(self) -> None:
        health = DisabledHealthStore()
        assert await health.fetch_recent() == []
        await health.save_if_needed([make_reading(0)])
        await health.delete_glucose("r-1")

    @pytest.mark.asyncio
    async def test_disabled_cloud_mirror_accepts_calls(self) -> None:
        cloud = DisabledCloudMirror()
        await cloud.upload_glucose()
        await cloud.delete_manual_glucose(T0)
