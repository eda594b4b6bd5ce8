"""Pump-channel glucose source (Medtronic Enlite sensor read through the pump)."""

from __future__ import annotations

from typing import Any

from src.cgm.sources.transmitter import BufferedSource


class PumpChannelSource(BufferedSource):
    """Glucose relayed by the insulin pump's own sensor channel.

    The pump driver calls ``receive()`` whenever it reads sensor history.
    """

    SOURCE_ID = "enlite"
    DISPLAY_NAME = "Enlite (pump)"

    def __init__(self, pump_name: str | None = None, on_push=None) -> None:
        super().__init__(on_push=on_push)
        self.pump_name = pump_name

    def source_info(self) -> dict[str, Any]:
        info = super().source_info()
        info["pump"] = self.pump_name
        return info
