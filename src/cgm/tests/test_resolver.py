"""Tests for active source resolution across configuration changes."""

from __future__ import annotations

from pathlib import Path

from src.cgm.config_loader import CGMConfigChannel
from src.cgm.resolver import SourceResolver
from src.cgm.sources import (
    AppGroupSource,
    DexcomG6Source,
    GlucoseSimulatorSource,
    PumpChannelSource,
    SourceDependencies,
)
from src.cgm.tests.conftest import make_config, make_reading


def _resolver(tmp_path: Path, transmitter_id: str = "X") -> tuple[SourceResolver, CGMConfigChannel]:
    channel = CGMConfigChannel(make_config(cgm="dexcom_g6", transmitter_id=transmitter_id))
    return SourceResolver(channel, SourceDependencies(shared_dir=tmp_path)), channel


class TestResolve:
    def test_same_config_returns_same_instance(self, tmp_path: Path) -> None:
        resolver, _ = _resolver(tmp_path)
        assert resolver.resolve() is resolver.resolve()

    def test_unrelated_change_keeps_instance(self, tmp_path: Path) -> None:
        resolver, channel = _resolver(tmp_path)
        first = resolver.resolve()
        channel.publish(make_config(cgm="dexcom_g6", transmitter_id="X", smoothing=True))
        assert resolver.resolve() is first

    def test_transmitter_change_builds_fresh_source(self, tmp_path: Path) -> None:
        resolver, channel = _resolver(tmp_path)
        old = resolver.resolve()

        channel.publish(make_config(cgm="dexcom_g6", transmitter_id="Y"))
        new = resolver.resolve()

        assert isinstance(new, DexcomG6Source)
        assert new is not old
        assert new.transmitter_id == "Y"
        assert old.released
        assert not new.released

    def test_type_change_switches_variant(self, tmp_path: Path) -> None:
        resolver, channel = _resolver(tmp_path)
        old = resolver.resolve()

        channel.publish(make_config(cgm="xdrip"))
        assert isinstance(resolver.resolve(), AppGroupSource)
        assert old.released

        channel.publish(make_config(cgm="simulator"))
        assert isinstance(resolver.resolve(), GlucoseSimulatorSource)


class TestPushHandler:
    def test_push_handler_attached_to_new_sources(self, tmp_path: Path) -> None:
        pushed: list = []
        resolver, channel = _resolver(tmp_path)
        resolver.set_push_handler(pushed.append)

        resolver.resolve().receive([make_reading(0)])
        channel.publish(make_config(cgm="dexcom_g6", transmitter_id="Y"))
        resolver.resolve().receive([make_reading(5)])

        assert [batch[0].timestamp.minute for batch in pushed] == [0, 5]

    def test_set_handler_after_resolve_attaches_active(self, tmp_path: Path) -> None:
        pushed: list = []
        resolver, _ = _resolver(tmp_path)
        source = resolver.resolve()
        resolver.set_push_handler(pushed.append)
        source.receive([make_reading(0)])
        assert len(pushed) == 1

    def test_shared_pump_channel_is_detached_not_released(self, tmp_path: Path) -> None:
        pushed: list = []
        channel = CGMConfigChannel(make_config(cgm="enlite"))
        resolver = SourceResolver(channel, SourceDependencies(shared_dir=tmp_path))
        resolver.set_push_handler(pushed.append)
        pump = resolver.resolve()
        assert isinstance(pump, PumpChannelSource)

        channel.publish(make_config(cgm="simulator"))
        resolver.resolve()
        pump.receive([make_reading(0)])

        assert pushed == []
        assert not pump.released
        assert pump.source_info()["buffered"] == 1
