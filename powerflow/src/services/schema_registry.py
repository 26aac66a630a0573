"""
Blueprint-driven schema registry for per-device time series tables.

A blueprint is a YAML document declaring a device reference (``header``) and
its register list. The registry scans the blueprint directory for the
document whose reference matches, turns its register short names into a
DeviceSchema, and caches the result in a bounded FIFO cache with a fixed TTL.
Expired entries are re-read from disk on the next access; lookups that miss
are never cached.

DeviceSchema is the only place that knows how a device table is laid out:
it hands SQLAlchemy column descriptors to the store, so no call site composes
DDL strings.

Operations:
- schema_for(reference): cached blueprint lookup -> DeviceSchema.
- reconcile(devices, store): create missing device tables (idempotent).
- load_devices(path): read the configured device list from YAML.

CHANGELOG:
- 2026-10-18: Case-insensitive duplicate and reserved-name checks
- 2026-10-12: Drop reserved/duplicate short names instead of failing DDL
- 2026-10-09: Bounded cache with TTL revalidation (STORY-108)
- 2026-10-07: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import ValidationError
from sqlalchemy import Column, Float, Integer, MetaData, Table

from powerflow.src.exceptions import BlueprintNotFound, PowerFlowError, SchemaIncomplete
from powerflow.src.models import DeviceConfig, ReconcileReport

if TYPE_CHECKING:
    from powerflow.src.db.store import TelemetryStore

logger = logging.getLogger(__name__)

_BLUEPRINT_SUFFIXES = (".yaml", ".yml")
_RESERVED_COLUMNS = frozenset({"timestamp", "sample_count"})
_UNSAFE_TABLE_CHARS = re.compile(r"[^a-zA-Z0-9_]")

DEFAULT_CACHE_SIZE = 64
DEFAULT_CACHE_TTL_S = 30 * 60.0


def table_name_for(device_name: str) -> str:
    """Return the physical table name for a device.

    Every character outside ``[A-Za-z0-9_]`` becomes an underscore, so the
    name is always a safe SQL identifier.
    """
    return "device_" + _UNSAFE_TABLE_CHARS.sub("_", device_name)


@dataclass(frozen=True)
class DeviceSchema:
    """Ordered register layout of one blueprint reference.

    Attributes:
        reference: Blueprint reference this schema was derived from.
        device_type: ``header.device_type`` of the blueprint, if declared.
        registers: Register short names in blueprint order, de-duplicated.
        source: File name of the blueprint the schema was read from.
    """

    reference: str
    device_type: str | None
    registers: tuple[str, ...]
    source: str | None = None

    def columns(self) -> list[Column]:
        """Column descriptors: timestamp PK, one REAL per register, sample_count."""
        columns = [Column("timestamp", Integer, primary_key=True, autoincrement=False)]
        columns.extend(Column(name, Float, nullable=True) for name in self.registers)
        columns.append(Column("sample_count", Integer, nullable=True))
        return columns

    def build_table(self, table_name: str, metadata: MetaData) -> Table:
        """Bind the schema's columns to a new Table in *metadata*."""
        return Table(table_name, metadata, *self.columns())


def _blueprint_reference(document: Any) -> str | None:
    """Return the reference a blueprint document declares, if any."""
    if not isinstance(document, dict):
        return None
    header = document.get("header")
    if isinstance(header, dict) and header.get("reference") is not None:
        return str(header["reference"])
    reference = document.get("reference")
    return str(reference) if reference is not None else None


def schema_from_blueprint(
    reference: str,
    document: dict[str, Any],
    source: str | None = None,
) -> DeviceSchema:
    """Derive a DeviceSchema from a parsed blueprint document.

    Registers may be declared as mappings with a ``short_name`` key or as
    bare strings. Entries without a usable name, duplicates, and names that
    collide with the reserved ``timestamp``/``sample_count`` columns are
    dropped with a warning.
    SQLite column names are case-insensitive, so both checks ignore case and
    the first spelling of a name wins.

    Raises:
        SchemaIncomplete: If no usable register remains.
    """
    header = document.get("header") if isinstance(document.get("header"), dict) else {}
    raw_registers = document.get("registers") or []
    if not isinstance(raw_registers, list):
        raw_registers = []

    names: list[str] = []
    seen: set[str] = set()
    for entry in raw_registers:
        name = entry.get("short_name") if isinstance(entry, dict) else entry
        if not isinstance(name, str) or not name.strip():
            logger.warning("Blueprint %s: register without short_name skipped", reference)
            continue
        name = name.strip()
        key = name.casefold()
        if key in _RESERVED_COLUMNS:
            logger.warning(
                "Blueprint %s: register '%s' collides with a reserved column, skipped",
                reference,
                name,
            )
            continue
        if key in seen:
            logger.warning("Blueprint %s: duplicate register '%s' skipped", reference, name)
            continue
        seen.add(key)
        names.append(name)

    if not names:
        raise SchemaIncomplete(reference, source)

    device_type = header.get("device_type", document.get("device_type"))
    return DeviceSchema(
        reference=reference,
        device_type=str(device_type) if device_type is not None else None,
        registers=tuple(names),
        source=source,
    )


class SchemaRegistry:
    """Cached blueprint lookup and device table reconciliation.

    Args:
        blueprint_dir: Directory holding blueprint YAML documents.
        max_entries: Cache capacity; the oldest entry is evicted first.
        ttl_s: Seconds a cached schema is trusted before re-reading disk.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        blueprint_dir: str | Path,
        *,
        max_entries: int = DEFAULT_CACHE_SIZE,
        ttl_s: float = DEFAULT_CACHE_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._blueprint_dir = Path(blueprint_dir)
        self._max_entries = max_entries
        self._ttl_s = ttl_s
        self._clock = clock
        self._cache: OrderedDict[str, tuple[DeviceSchema, float]] = OrderedDict()

    @property
    def cached_references(self) -> list[str]:
        """References currently cached, oldest first."""
        return list(self._cache)

    def invalidate(self, reference: str | None = None) -> None:
        """Drop one cached reference, or the whole cache."""
        if reference is None:
            self._cache.clear()
        else:
            self._cache.pop(reference, None)

    async def schema_for(self, reference: str) -> DeviceSchema:
        """Return the schema for *reference*, reading disk on a cache miss.

        The directory scan runs in a worker thread so the event loop keeps
        serving while blueprint files are read.

        Raises:
            BlueprintNotFound: No blueprint declares *reference*.
            SchemaIncomplete: The blueprint declares zero usable registers.
        """
        cached = self._cache_get(reference)
        if cached is not None:
            return cached

        schema = await asyncio.to_thread(self._load_schema, reference)
        self._cache_put(reference, schema)
        return schema

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cache_get(self, reference: str) -> DeviceSchema | None:
        entry = self._cache.get(reference)
        if entry is None:
            return None
        schema, expires_at = entry
        if self._clock() >= expires_at:
            logger.debug("Blueprint cache entry for %s expired", reference)
            del self._cache[reference]
            return None
        return schema

    def _cache_put(self, reference: str, schema: DeviceSchema) -> None:
        self._cache[reference] = (schema, self._clock() + self._ttl_s)
        self._cache.move_to_end(reference)
        while len(self._cache) > self._max_entries:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug("Blueprint cache full, evicted %s", evicted)

    # ------------------------------------------------------------------
    # Disk scan
    # ------------------------------------------------------------------

    def _load_schema(self, reference: str) -> DeviceSchema:
        """Scan the blueprint directory for *reference* (blocking)."""
        if not self._blueprint_dir.is_dir():
            logger.warning("Blueprint directory %s does not exist", self._blueprint_dir)
            raise BlueprintNotFound(reference)

        for path in sorted(self._blueprint_dir.iterdir()):
            if path.suffix.lower() not in _BLUEPRINT_SUFFIXES or not path.is_file():
                continue
            try:
                document = yaml.safe_load(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
                logger.warning("Could not read blueprint file %s: %s", path.name, exc)
                continue

            if _blueprint_reference(document) == reference:
                logger.info("Loaded blueprint for reference %s from %s", reference, path.name)
                return schema_from_blueprint(reference, document, source=path.name)

        raise BlueprintNotFound(reference)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        devices: Iterable[DeviceConfig],
        store: TelemetryStore,
    ) -> ReconcileReport:
        """Create a table for every configured device that lacks one.

        Safe to run repeatedly: devices whose table is already registered
        are reported under ``already_exist`` and left untouched. A failure
        on one device is logged and does not stop the others.
        """
        report = ReconcileReport()
        for device in devices:
            if not device.device_name or not device.reference:
                logger.warning(
                    "Skipping device with missing name or reference: %s",
                    device.model_dump(),
                )
                continue

            name = device.device_name
            try:
                if await store.device_table_exists(name):
                    report.already_exist.append(name)
                    continue
                table_name = await store.create_device_table(name, device.reference)
            except PowerFlowError as exc:
                logger.error("Table provisioning failed for %s: %s", name, exc)
                report.failed.append(name)
                continue

            logger.info("Created table %s for device %s", table_name, name)
            report.created.append(name)

        logger.info(
            "Reconcile summary: created=%d already_exist=%d failed=%d",
            len(report.created),
            len(report.already_exist),
            len(report.failed),
        )
        if report.failed:
            logger.warning("Devices without a table: %s", ", ".join(report.failed))
        return report


def _parse_device_list(document: Any) -> list[Any]:
    """Accept the device list layouts seen in deployed devices YAML files."""
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        for key in ("devices_list", "devices"):
            if isinstance(document.get(key), list):
                return document[key]
        logger.warning("Unexpected devices YAML structure, treating it as a single device")
        return [document]
    return []


def _read_device_file(path: Path) -> list[DeviceConfig]:
    if not path.is_file():
        logger.info("No devices file at %s, nothing to reconcile", path)
        return []
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        logger.error("Could not load devices file %s: %s", path, exc)
        return []

    devices: list[DeviceConfig] = []
    for entry in _parse_device_list(document):
        if not isinstance(entry, dict):
            continue
        try:
            devices.append(DeviceConfig.model_validate(entry))
        except ValidationError as exc:
            logger.warning("Skipping malformed device entry %s: %s", entry, exc)
    return devices


async def load_devices(path: str | Path) -> list[DeviceConfig]:
    """Load the configured device list; a missing file yields ``[]``."""
    return await asyncio.to_thread(_read_device_file, Path(path))
