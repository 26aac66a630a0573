"""
Unit tests for the broadcast gateway.

Tests verify:
- Status labels (Active/Inactive, Running/Stopped, Active/No Load; > 0 is on).
- Device push is skipped, payload never built, when nobody watches the room.
- Device push delivers registers + _timestamp + _deviceName once joined.
- Aggregate push carries totals, batchId, receivedDevices and status.

CHANGELOG:
- 2026-10-09: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

from typing import Any
from unittest.mock import patch

import pytest
from powerflow.src.models import AggregateSnapshot, DeviceReading
from powerflow.src.realtime.gateway import (
    POWER_FLOW_EVENT,
    POWER_FLOW_ROOM,
    SENSOR_EVENT,
    BroadcastGateway,
    sensor_room,
    status_labels,
)
from powerflow.src.realtime.subscriptions import SubscriptionRegistry

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Recorder:
    def __init__(self, client_id: str = "client-1") -> None:
        self._client_id = client_id
        self.received: list[tuple[str, Any]] = []

    @property
    def client_id(self) -> str:
        return self._client_id

    async def send(self, event: str, data: Any) -> None:
        self.received.append((event, data))


def _make_snapshot(**totals: float) -> AggregateSnapshot:
    values = {"solar": 0.0, "grid": 0.0, "genset": 0.0, **totals}
    values["load"] = values["solar"] + values["grid"] + values["genset"]
    return AggregateSnapshot(timestamp=1_760_000_000_000, batch_id="b-9", received_devices=["solar"], **values)


def _make_reading() -> DeviceReading:
    return DeviceReading(
        device_name="Inv-1",
        device_type="solar_inverter",
        reference="SUN2000",
        registers={"W": 250.0, "Hz": None},
        batch_id="b-9",
        timestamp=1_760_000_000_000,
    )


# ---------------------------------------------------------------------------
# Status labels
# ---------------------------------------------------------------------------


class TestStatusLabels:
    """A category is on only when strictly positive."""

    def test_all_positive(self) -> None:
        labels = status_labels(_make_snapshot(solar=1.0, grid=2.0, genset=3.0))
        assert labels == {"solar": "Active", "grid": "Active", "genset": "Running", "load": "Active"}

    def test_all_zero(self) -> None:
        labels = status_labels(_make_snapshot())
        assert labels == {"solar": "Inactive", "grid": "Inactive", "genset": "Stopped", "load": "No Load"}

    def test_exporting_grid_is_inactive(self) -> None:
        labels = status_labels(_make_snapshot(solar=500.0, grid=-200.0))
        assert labels["grid"] == "Inactive"
        assert labels["load"] == "Active"


# ---------------------------------------------------------------------------
# Device push
# ---------------------------------------------------------------------------


class TestPushDevice:
    """Raw register push is gated by room membership."""

    @pytest.mark.asyncio
    async def test_no_subscriber_skips_payload(self) -> None:
        gateway = BroadcastGateway(SubscriptionRegistry())

        with patch("powerflow.src.realtime.gateway.sensor_payload") as build:
            assert await gateway.push_device(_make_reading()) is False
        build.assert_not_called()

    @pytest.mark.asyncio
    async def test_subscriber_receives_registers(self) -> None:
        registry = SubscriptionRegistry()
        gateway = BroadcastGateway(registry)
        viewer = _Recorder()
        registry.join(viewer, sensor_room("Inv-1"))

        assert await gateway.push_device(_make_reading()) is True

        assert viewer.received == [
            (
                SENSOR_EVENT,
                {"W": 250.0, "Hz": None, "_timestamp": 1_760_000_000_000, "_deviceName": "Inv-1"},
            )
        ]

    @pytest.mark.asyncio
    async def test_other_device_room_not_notified(self) -> None:
        registry = SubscriptionRegistry()
        gateway = BroadcastGateway(registry)
        viewer = _Recorder()
        registry.join(viewer, sensor_room("Meter-1"))

        assert await gateway.push_device(_make_reading()) is False
        assert viewer.received == []


# ---------------------------------------------------------------------------
# Aggregate push
# ---------------------------------------------------------------------------


class TestPushPowerFlow:
    """Aggregate snapshot push to the power-flow room."""

    @pytest.mark.asyncio
    async def test_no_subscriber(self) -> None:
        gateway = BroadcastGateway(SubscriptionRegistry())
        assert await gateway.push_power_flow(_make_snapshot(solar=1.0)) is False

    @pytest.mark.asyncio
    async def test_payload_shape(self) -> None:
        registry = SubscriptionRegistry()
        gateway = BroadcastGateway(registry)
        viewer = _Recorder()
        registry.join(viewer, POWER_FLOW_ROOM)

        assert await gateway.push_power_flow(_make_snapshot(solar=250.0, grid=-50.0, genset=75.0)) is True

        event, data = viewer.received[0]
        assert event == POWER_FLOW_EVENT
        assert data == {
            "solar": 250.0,
            "grid": -50.0,
            "genset": 75.0,
            "load": 275.0,
            "timestamp": 1_760_000_000_000,
            "batchId": "b-9",
            "receivedDevices": ["solar"],
            "status": {"solar": "Active", "grid": "Inactive", "genset": "Running", "load": "Active"},
        }
