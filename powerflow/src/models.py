"""
Pydantic models shared across the hub.

Defines the normalised per-device reading produced by the ingestor, the
aggregate snapshot produced by the aggregation engine, and the small result
objects returned by the store and the reconciliation pass.

Register values are ``float | None``: the ingestor maps the upstream
``"null"`` sentinel (and JSON null) to ``None`` so that downstream code never
compares strings and never mistakes a missing value for zero.

CHANGELOG:
- 2026-10-18: Numeric device names from YAML become strings; drop unused LOAD category
- 2026-10-10: Add StoreResult soft-failure object (STORY-110)
- 2026-10-06: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Category(StrEnum):
    """Power-flow category a device contributes to."""

    SOLAR = "solar"
    GRID = "grid"
    GENSET = "genset"


DEVICE_TYPE_CATEGORIES: dict[str, Category] = {
    "solar_inverter": Category.SOLAR,
    "power_meter": Category.GRID,
    "genset_controller": Category.GENSET,
}
"""Maps upstream device_type -> category. Unlisted types do not contribute."""


class BatchMetadata(BaseModel):
    """Batch-level metadata carried alongside the device entries.

    Attributes:
        batch_id: Upstream batch identifier (may be absent).
        timestamp: Capture time in epoch milliseconds.
    """

    batch_id: str | None = None
    timestamp: int


class DeviceReading(BaseModel):
    """One device entry of a batch after normalisation.

    Attributes:
        device_name: Unique device name, used for room and table names.
        device_type: Upstream device type (e.g. ``solar_inverter``).
        reference: Blueprint reference of the device.
        registers: Register short name -> numeric value or None.
        batch_id: Identifier of the batch this reading came from.
        timestamp: Batch capture time in epoch milliseconds.
    """

    model_config = ConfigDict(frozen=True)

    device_name: str
    device_type: str | None = None

    @field_validator("device_name", "reference", "device_type", mode="before")
    @classmethod
    def scalars_to_str(cls, v: Any) -> Any:
        """YAML reads bare numbers such as ``1001`` as int; keep them as text."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v
    reference: str | None = None
    registers: dict[str, float | None]
    batch_id: str | None = None
    timestamp: int

    @property
    def category(self) -> Category | None:
        """Category this device feeds, or None for unclassified types."""
        if self.device_type is None:
            return None
        return DEVICE_TYPE_CATEGORIES.get(self.device_type)


class AggregateSnapshot(BaseModel):
    """Power-flow totals for one batch, rounded to two decimals.

    Attributes:
        solar: Solar production in watts.
        grid: Grid power in watts. Negative = export.
        genset: Generator power in watts.
        load: solar + grid + genset.
        timestamp: Batch capture time in epoch milliseconds.
        batch_id: Upstream batch identifier.
        received_devices: Categories that had fresh data this batch.
        device_counts: Number of entries seen per known device type.
    """

    solar: float = 0.0
    grid: float = 0.0
    genset: float = 0.0
    load: float = 0.0
    timestamp: int
    batch_id: str | None = None
    received_devices: list[str] = Field(default_factory=list)
    device_counts: dict[str, int] = Field(default_factory=dict)


class StoreResult(BaseModel):
    """Soft result returned by store operations on the hot path.

    A failed write or read never raises to the caller; it comes back as
    ``success=False`` with ``error`` populated.
    """

    success: bool
    data: Any = None
    count: int = 0
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> StoreResult:
        """Build a failed result with an empty payload."""
        return cls(success=False, data=[], error=error)


class DeviceConfig(BaseModel):
    """A device entry from the devices YAML file.

    Only the fields reconciliation needs are declared; the rest of the
    device record is kept but ignored.
    """

    model_config = ConfigDict(extra="allow")

    device_name: str | None = None
    reference: str | None = None
    device_type: str | None = None

    @field_validator("device_name", "reference", "device_type", mode="before")
    @classmethod
    def numbers_to_str(cls, v: Any) -> Any:
        """YAML reads bare numbers such as ``1001`` as int; keep them as text."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class ReconcileReport(BaseModel):
    """Outcome of reconciling configured devices against the table registry."""

    created: list[str] = Field(default_factory=list)
    already_exist: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
