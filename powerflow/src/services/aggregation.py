"""
Carry-forward power-flow aggregation.

Rolls the device readings of one batch up into solar, grid and genset totals
and derives load as their sum. A category that received no usable reading in
a batch keeps the total it had after the previous batch; a category with at
least one reporting device is replaced by the fresh sum. All outputs are
rounded half-up to two decimals, and load is the sum of the rounded
components.

``aggregate()`` is a pure function over (readings, previous state) so the
roll-up can be tested deterministically. AggregationEngine owns the state
between batches; the ingestor serialises calls to ``apply()``.

CHANGELOG:
- 2026-10-11: Per-device-type counts for diagnostics
- 2026-10-08: Initial creation (STORY-106)

TODO:
- None
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from powerflow.src.models import (
    DEVICE_TYPE_CATEGORIES,
    AggregateSnapshot,
    BatchMetadata,
    Category,
    DeviceReading,
)

logger = logging.getLogger(__name__)

SOURCE_CATEGORIES = (Category.SOLAR, Category.GRID, Category.GENSET)
PHASE_REGISTERS = ("WphA", "WphB", "WphC")

_CENT = Decimal("0.01")


def round_power(value: float) -> Decimal:
    """Round watts half-up to two decimals (2.345 -> 2.35, -2.345 -> -2.35)."""
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class AggregateState:
    """Last known total per source category.

    Attributes:
        solar: Solar total in watts.
        grid: Grid total in watts.
        genset: Genset total in watts.
    """

    solar: float = 0.0
    grid: float = 0.0
    genset: float = 0.0

    def total(self, category: Category) -> float:
        """Return the stored total for a source category."""
        return getattr(self, category.value)


@dataclass(frozen=True)
class AggregationResult:
    """Outcome of aggregating one batch.

    Attributes:
        snapshot: Rounded totals ready for broadcast and persistence.
        state: State to carry into the next batch.
        fresh: Categories that had at least one reporting device.
        device_counts: Entries seen per known device type.
    """

    snapshot: AggregateSnapshot
    state: AggregateState
    fresh: frozenset[Category] = frozenset()
    device_counts: dict[str, int] = field(default_factory=dict)


def resolve_device_power(registers: Mapping[str, float | None]) -> float | None:
    """Resolve one device's power from its registers.

    The composite ``W`` register wins when present and not None. Otherwise,
    when all three phase registers exist and at least one carries a value,
    the non-null phases are summed.

    Returns:
        float | None: Device power in watts, or None when the device has no
            usable power reading this batch.
    """
    composite = registers.get("W")
    if composite is not None:
        return float(composite)

    if all(name in registers for name in PHASE_REGISTERS):
        phases = [registers[name] for name in PHASE_REGISTERS]
        present = [float(value) for value in phases if value is not None]
        if present:
            return sum(present)

    return None


def aggregate(
    readings: Iterable[DeviceReading],
    previous: AggregateState,
    metadata: BatchMetadata,
) -> AggregationResult:
    """Aggregate one batch on top of *previous*.

    Args:
        readings: Normalised device readings of the batch.
        previous: Totals after the previous batch.
        metadata: Batch id and timestamp stamped on the snapshot.

    Returns:
        AggregationResult: Snapshot, next state, fresh categories and counts.
    """
    sums: dict[Category, float] = {}
    device_counts = {device_type: 0 for device_type in DEVICE_TYPE_CATEGORIES}

    for reading in readings:
        if reading.device_type in device_counts:
            device_counts[reading.device_type] += 1

        category = reading.category
        if category is None:
            continue

        power = resolve_device_power(reading.registers)
        if power is None:
            logger.debug("Device %s reported no power this batch", reading.device_name)
            continue
        sums[category] = sums.get(category, 0.0) + power

    rounded = {
        category: round_power(sums[category]) if category in sums else round_power(previous.total(category))
        for category in SOURCE_CATEGORIES
    }
    load = sum(rounded.values(), Decimal("0"))

    state = AggregateState(**{category.value: float(rounded[category]) for category in SOURCE_CATEGORIES})
    fresh = frozenset(sums)
    snapshot = AggregateSnapshot(
        solar=state.solar,
        grid=state.grid,
        genset=state.genset,
        load=float(load),
        timestamp=metadata.timestamp,
        batch_id=metadata.batch_id,
        received_devices=[category.value for category in SOURCE_CATEGORIES if category in fresh],
        device_counts=device_counts,
    )
    return AggregationResult(snapshot=snapshot, state=state, fresh=fresh, device_counts=device_counts)


class AggregationEngine:
    """Owns the carry-forward state across batches.

    State starts at zero for every category and is never persisted; a
    restart begins from zero again.
    """

    def __init__(self, initial: AggregateState | None = None) -> None:
        self._state = initial or AggregateState()

    @property
    def state(self) -> AggregateState:
        """Totals after the most recent batch."""
        return self._state

    def apply(self, readings: Iterable[DeviceReading], metadata: BatchMetadata) -> AggregationResult:
        """Aggregate a batch and advance the carried state."""
        result = aggregate(readings, self._state, metadata)
        carried = [category.value for category in SOURCE_CATEGORIES if category not in result.fresh]
        if carried:
            logger.debug("Batch %s carried forward: %s", metadata.batch_id, ", ".join(carried))
        self._state = result.state
        return result
