"""
Message ingestion: decode bus batches and drive the per-batch pipeline.

A bus message carries a list of device entries and batch metadata::

    {"data": [{"deviceMetaData": {"device_name": ..., "device_type": ...,
                                  "reference": ...},
               "register": {"W": "250", "WphA": "null", ...}}, ...],
     "metadata": {"batch_id": "b-1", "timestamp": "1760000000000"}}

Decoding tolerates the historical ``deviceMataData`` spelling and the
``device_name`` / ``deviceName`` / ``name`` keys. Entries without a name or
without a register mapping are skipped with a warning; the rest of the batch
is still processed. Register values become ``float | None``.

Per batch, in order, under one asyncio.Lock:

1. Raw register push to ``sensor:<device>`` rooms that have members.
2. Aggregation (carry-forward roll-up).
3. Aggregate broadcast to the ``power-flow`` room.
4. Persistence: one aggregate row plus one row per provisioned device.

Persistence is best-effort: store failures come back as StoreResult and are
logged, never raised into the bus callback.

CHANGELOG:
- 2026-10-12: Accept deviceMataData spelling and name fallbacks
- 2026-10-10: Persist after broadcast, soft store failures (STORY-110)
- 2026-10-08: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from powerflow.src.models import BatchMetadata, DeviceReading
from powerflow.src.services.aggregation import AggregationEngine, AggregationResult

if TYPE_CHECKING:
    from powerflow.src.db.store import TelemetryStore
    from powerflow.src.realtime.gateway import BroadcastGateway

logger = logging.getLogger(__name__)

_META_KEYS = ("deviceMetaData", "deviceMataData")
_NAME_KEYS = ("device_name", "deviceName", "name")
_NULL_STRINGS = frozenset({"", "null"})


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Value normalisation
# ---------------------------------------------------------------------------


def parse_register_value(name: str, value: Any) -> float | None:
    """Normalise one register value to a float or None.

    Numbers pass through and numeric strings are parsed. JSON null, the
    empty string, the literal ``"null"``, booleans and non-finite numbers
    become None. Any other string also becomes None, with a warning.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if text.lower() in _NULL_STRINGS:
            return None
        try:
            number = float(text)
        except ValueError:
            logger.warning("Register %s: non-numeric value %r ignored", name, value)
            return None
    else:
        logger.warning("Register %s: unsupported value type %s ignored", name, type(value).__name__)
        return None

    return number if math.isfinite(number) else None


def parse_timestamp(raw: Any, now_ms: int) -> int:
    """Parse a batch timestamp in epoch milliseconds.

    Accepts an int, a float, or a numeric string. Anything else falls back
    to *now_ms* with a warning.
    """
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    if isinstance(raw, float) and math.isfinite(raw):
        return int(raw)
    if isinstance(raw, str) and raw.strip():
        text = raw.strip()
        try:
            return int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                number = math.nan
            if math.isfinite(number):
                return int(number)

    logger.warning("Invalid batch timestamp %r, using current time", raw)
    return now_ms


# ---------------------------------------------------------------------------
# Message decoding
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecodedBatch:
    """A decoded bus message.

    Attributes:
        metadata: Batch id and timestamp.
        readings: Valid device readings, in message order.
        skipped: Number of entries dropped as malformed.
    """

    metadata: BatchMetadata
    readings: list[DeviceReading] = field(default_factory=list)
    skipped: int = 0


def _device_meta(entry: Mapping[str, Any]) -> Mapping[str, Any]:
    for key in _META_KEYS:
        meta = entry.get(key)
        if isinstance(meta, Mapping):
            return meta
    return {}


def _device_name(meta: Mapping[str, Any]) -> str | None:
    for key in _NAME_KEYS:
        name = meta.get(key)
        if name is not None and str(name).strip():
            return str(name).strip()
    return None


def _optional_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def decode_entry(entry: Any, metadata: BatchMetadata) -> DeviceReading | None:
    """Turn one ``data`` entry into a DeviceReading, or None if malformed."""
    if not isinstance(entry, Mapping):
        logger.warning("Skipping non-object device entry: %r", entry)
        return None

    meta = _device_meta(entry)
    name = _device_name(meta)
    if name is None:
        logger.warning("Skipping device entry without a device name")
        return None

    register = entry.get("register")
    if not isinstance(register, Mapping):
        logger.warning("Skipping device %s: register map missing or not an object", name)
        return None

    registers = {str(key): parse_register_value(str(key), value) for key, value in register.items()}
    return DeviceReading(
        device_name=name,
        device_type=_optional_str(meta.get("device_type")),
        reference=_optional_str(meta.get("reference")),
        registers=registers,
        batch_id=metadata.batch_id,
        timestamp=metadata.timestamp,
    )


def decode_message(
    raw: bytes | str | Mapping[str, Any],
    *,
    clock_ms: Callable[[], int] = _now_ms,
) -> DecodedBatch | None:
    """Decode one bus message.

    Returns:
        DecodedBatch | None: None when the message is not a JSON object.
            A message whose ``data`` is not a list decodes to zero readings.
    """
    document: Any = raw
    if isinstance(raw, bytes | bytearray):
        try:
            document = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Dropping message that is not valid UTF-8")
            return None
    if isinstance(document, str):
        try:
            document = json.loads(document)
        except json.JSONDecodeError as exc:
            logger.warning("Dropping message that is not valid JSON: %s", exc)
            return None
    if not isinstance(document, Mapping):
        logger.warning("Dropping message that is not a JSON object")
        return None

    raw_meta = document.get("metadata")
    if not isinstance(raw_meta, Mapping):
        raw_meta = {}
    metadata = BatchMetadata(
        batch_id=_optional_str(raw_meta.get("batch_id")),
        timestamp=parse_timestamp(raw_meta.get("timestamp"), clock_ms()),
    )

    data = document.get("data")
    if not isinstance(data, list):
        logger.warning("Batch %s: 'data' is not a list, no readings", metadata.batch_id)
        return DecodedBatch(metadata=metadata)

    readings: list[DeviceReading] = []
    for entry in data:
        reading = decode_entry(entry, metadata)
        if reading is not None:
            readings.append(reading)
    return DecodedBatch(metadata=metadata, readings=readings, skipped=len(data) - len(readings))


# ---------------------------------------------------------------------------
# Ingestor
# ---------------------------------------------------------------------------


class MessageIngestor:
    """Runs decoded batches through broadcast, aggregation and persistence.

    Args:
        engine: Carry-forward aggregation state owner.
        gateway: Outbound broadcast hand-off.
        store: Telemetry store, or None to skip persistence.
        clock_ms: Wall clock used for timestamp fallback.
    """

    def __init__(
        self,
        engine: AggregationEngine,
        gateway: BroadcastGateway,
        store: TelemetryStore | None = None,
        *,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._engine = engine
        self._gateway = gateway
        self._store = store
        self._clock_ms = clock_ms
        self._lock = asyncio.Lock()
        self._closing = False
        self._batches = 0

    @property
    def batches_processed(self) -> int:
        """Batches that completed the pipeline since start."""
        return self._batches

    @property
    def closing(self) -> bool:
        return self._closing

    async def handle_message(self, raw: bytes | str | Mapping[str, Any]) -> AggregationResult | None:
        """Decode and process one bus message.

        Returns:
            AggregationResult | None: The batch's aggregation, or None when
                the message was dropped.
        """
        if self._closing:
            logger.warning("Ingestor is closing, message dropped")
            return None

        batch = decode_message(raw, clock_ms=self._clock_ms)
        if batch is None:
            return None
        if batch.skipped:
            logger.warning(
                "Batch %s: skipped %d malformed entr%s",
                batch.metadata.batch_id,
                batch.skipped,
                "y" if batch.skipped == 1 else "ies",
            )
        if not batch.readings:
            logger.info("Batch %s has no device readings, nothing to aggregate", batch.metadata.batch_id)
            return None

        async with self._lock:
            try:
                return await self._process(batch)
            except Exception:
                logger.error("Processing batch %s failed", batch.metadata.batch_id, exc_info=True)
                return None

    async def _process(self, batch: DecodedBatch) -> AggregationResult:
        pushed = 0
        for reading in batch.readings:
            if await self._gateway.push_device(reading):
                pushed += 1

        result = self._engine.apply(batch.readings, batch.metadata)
        await self._gateway.push_power_flow(result.snapshot)
        await self._persist(batch, result)

        self._batches += 1
        logger.info(
            "Batch %s: %d devices, fresh=%s, pushed to %d sensor room(s)",
            batch.metadata.batch_id,
            len(batch.readings),
            ",".join(result.snapshot.received_devices) or "-",
            pushed,
        )
        return result

    async def _persist(self, batch: DecodedBatch, result: AggregationResult) -> None:
        if self._store is None:
            return

        stored = await self._store.record_snapshot(result.snapshot)
        if not stored.success:
            logger.warning("Aggregate for batch %s not stored: %s", batch.metadata.batch_id, stored.error)

        for reading in batch.readings:
            if not self._store.has_device_table(reading.device_name):
                continue
            sample = await self._store.insert_device_sample(
                reading.device_name,
                reading.registers,
                reading.timestamp,
            )
            if not sample.success:
                logger.warning("Sample for %s not stored: %s", reading.device_name, sample.error)

    async def close(self) -> None:
        """Stop accepting batches and wait for the one in flight."""
        self._closing = True
        async with self._lock:
            pass
        logger.info("Ingestor closed after %d batches", self._batches)
