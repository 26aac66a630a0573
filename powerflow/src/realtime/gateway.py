"""
Broadcast gateway: builds outbound payloads and hands them to the rooms.

Two events leave the hub:

- ``sensor-data`` to room ``sensor:<device_name>``: the device's register
  map plus ``_timestamp`` and ``_deviceName``.
- ``power-flow-data`` to room ``power-flow``: the aggregate snapshot with
  per-category status labels.

Payloads are only built when the target room has members.

CHANGELOG:
- 2026-10-09: Initial creation (STORY-107)

TODO:
- None
"""

import logging
from typing import Any

from powerflow.src.models import AggregateSnapshot, DeviceReading
from powerflow.src.realtime.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)

SENSOR_EVENT = "sensor-data"
POWER_FLOW_EVENT = "power-flow-data"
POWER_FLOW_ROOM = "power-flow"
SENSOR_ROOM_PREFIX = "sensor:"


def sensor_room(device_name: str) -> str:
    """Room name for a device's raw register stream."""
    return f"{SENSOR_ROOM_PREFIX}{device_name}"


def status_labels(snapshot: AggregateSnapshot) -> dict[str, str]:
    """Human-readable state per category; a value counts as on when > 0."""
    return {
        "solar": "Active" if snapshot.solar > 0 else "Inactive",
        "grid": "Active" if snapshot.grid > 0 else "Inactive",
        "genset": "Running" if snapshot.genset > 0 else "Stopped",
        "load": "Active" if snapshot.load > 0 else "No Load",
    }


def sensor_payload(reading: DeviceReading) -> dict[str, Any]:
    """Register map tagged with the batch timestamp and device name."""
    payload: dict[str, Any] = dict(reading.registers)
    payload["_timestamp"] = reading.timestamp
    payload["_deviceName"] = reading.device_name
    return payload


def power_flow_payload(snapshot: AggregateSnapshot) -> dict[str, Any]:
    """Aggregate snapshot in the client wire format."""
    return {
        "solar": snapshot.solar,
        "grid": snapshot.grid,
        "genset": snapshot.genset,
        "load": snapshot.load,
        "timestamp": snapshot.timestamp,
        "batchId": snapshot.batch_id,
        "receivedDevices": list(snapshot.received_devices),
        "status": status_labels(snapshot),
    }


class BroadcastGateway:
    """Final hand-off of device and aggregate payloads to subscribers."""

    def __init__(self, registry: SubscriptionRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    async def push_device(self, reading: DeviceReading) -> bool:
        """Send a device's raw registers to its room, if anyone watches it.

        Returns:
            bool: True if the room had members and delivery was attempted.
        """
        room = sensor_room(reading.device_name)
        if not self._registry.has_members(room):
            return False
        return await self._registry.emit(room, SENSOR_EVENT, sensor_payload(reading))

    async def push_power_flow(self, snapshot: AggregateSnapshot) -> bool:
        """Send the aggregate snapshot to the power-flow room."""
        if not self._registry.has_members(POWER_FLOW_ROOM):
            return False
        delivered = await self._registry.emit(
            POWER_FLOW_ROOM,
            POWER_FLOW_EVENT,
            power_flow_payload(snapshot),
        )
        if delivered:
            logger.debug(
                "Power flow %s: solar=%.2f grid=%.2f genset=%.2f load=%.2f",
                snapshot.batch_id,
                snapshot.solar,
                snapshot.grid,
                snapshot.genset,
                snapshot.load,
            )
        return delivered
