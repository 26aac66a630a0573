"""
SQLite telemetry store: per-device time series and aggregate history.

Two kinds of tables share one database file:

1. Per-device tables (``device_<name>``): insert-only rows keyed by the batch
   timestamp, one REAL column per blueprint register plus ``sample_count``.
   Their layout is fixed when the table is created; later blueprint changes
   never alter an existing table. The live column set is reflected from the
   database at open time.
2. ``power_flow_analysis``: one row per aggregate snapshot, indexed by
   timestamp, read back in ascending order for history charts.

SQLite reports ``database is locked`` when another writer holds the lock.
Every operation retries that condition a bounded number of times with a
fixed delay. The driver-level busy timeout is kept short (200 ms), so the
worst-case wait of one operation is about
``(retries + 1) * busy_timeout + retries * delay`` (3.8 s with defaults).
Hot-path operations (sample inserts, snapshot writes, reads, cleanup) then
return a StoreResult with ``success=False``; lifecycle
operations raise StoreUnavailable.

Operations:
- create_device_table(device_name, reference) / delete_device_table(name)
- device_table_name(name) / device_table_exists(name)
- insert_device_sample(name, registers, timestamp_ms)
- record_snapshot(snapshot)
- history(minutes=, hours=) / history_range(start_ms, end_ms)
- stats(hours) / cleanup(retention_days) / database_size() / ping()

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-18: Reject table-name collisions; short driver busy timeout
- 2026-10-13: Add stats and database_size reports
- 2026-10-10: Busy retry with soft failure results (STORY-110)
- 2026-10-08: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import MetaData, Table, delete, func, insert, inspect, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from powerflow.src.db.models import Base, DeviceTableRecord, PowerFlowRecord
from powerflow.src.db.session import create_engine
from powerflow.src.exceptions import StoreUnavailable, TableNameConflict
from powerflow.src.models import AggregateSnapshot, StoreResult
from powerflow.src.services.schema_registry import table_name_for

if TYPE_CHECKING:
    from powerflow.src.services.schema_registry import SchemaRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")
_RESERVED_COLUMNS = ("timestamp", "sample_count")
_MS_PER_DAY = 86_400_000

DEFAULT_BUSY_RETRIES = 3
DEFAULT_BUSY_DELAY_S = 1.0
DEFAULT_BUSY_TIMEOUT_MS = 200
DEFAULT_RETENTION_DAYS = 30


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_busy(exc: OperationalError) -> bool:
    """Return True if the error is SQLite's transient lock contention."""
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


def _iso_ms(timestamp_ms: int) -> str:
    """Format epoch milliseconds as ``2026-10-01T12:00:00.000Z``."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _history_point(row: Any) -> dict[str, Any]:
    return {
        "solar": float(row.solar or 0),
        "grid": float(row.grid or 0),
        "genset": float(row.genset or 0),
        "load": float(row.load or 0),
        "batchId": row.batch_id,
        "time": _iso_ms(int(row.timestamp)),
    }


class TelemetryStore:
    """Async SQLite store for device samples and aggregate history.

    Args:
        db_path: SQLite database file. Parent directories are created.
        schema_registry: Source of DeviceSchema for new device tables.
        busy_retries: Retries after a busy/locked error before giving up.
        busy_delay_s: Fixed delay between retries.
        busy_timeout_ms: Driver-level wait on a locked database per attempt.
            Kept short so the retry loop, not the driver, sets the pace.
        clock_ms: Wall clock in epoch milliseconds, injectable for tests.

    Usage::

        async with TelemetryStore("/data/power_flow.db", registry) as store:
            await store.create_device_table("Inv1", "SUN2000")
            await store.record_snapshot(snapshot)
    """

    def __init__(
        self,
        db_path: str | Path,
        schema_registry: SchemaRegistry,
        *,
        busy_retries: int = DEFAULT_BUSY_RETRIES,
        busy_delay_s: float = DEFAULT_BUSY_DELAY_S,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._db_path = Path(db_path)
        self._schemas = schema_registry
        self._busy_retries = busy_retries
        self._busy_delay_s = busy_delay_s
        self._busy_timeout_ms = busy_timeout_ms
        self._clock_ms = clock_ms
        self._engine: AsyncEngine | None = None
        self._device_tables: dict[str, Table] = {}

    @property
    def db_path(self) -> Path:
        """Filesystem path of the database file."""
        return self._db_path

    @property
    def provisioned_devices(self) -> list[str]:
        """Device names with a table known to this store instance."""
        return sorted(self._device_tables)

    def has_device_table(self, device_name: str) -> bool:
        """True if this store has a table loaded for *device_name*."""
        return device_name in self._device_tables

    def device_columns(self, device_name: str) -> list[str] | None:
        """Column names of a device's table, or None when not provisioned."""
        table = self._device_tables.get(device_name)
        return None if table is None else list(table.c.keys())

    async def open(self) -> None:
        """Create the engine, the static tables, and load device tables.

        Raises:
            StoreUnavailable: If the database cannot be initialised.
        """
        self._engine = create_engine(self._db_path, busy_timeout_ms=self._busy_timeout_ms)

        async def _init() -> None:
            async with self._require_engine().begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
                await self._load_device_tables(conn)

        await self._attempt("open", _init)
        logger.info(
            "Store ready at %s (%d device tables)",
            self._db_path,
            len(self._device_tables),
        )

    async def close(self) -> None:
        """Dispose the engine. Further operations require open() again."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info("Store at %s closed", self._db_path)

    async def __aenter__(self) -> TelemetryStore:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Retry plumbing
    # ------------------------------------------------------------------

    def _require_engine(self) -> AsyncEngine:
        assert self._engine is not None, "Store not opened. Call open() or use async with."
        return self._engine

    async def _attempt(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation*, retrying busy errors with a fixed delay.

        Raises:
            StoreUnavailable: Busy after all retries, or any other
                database error.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except OperationalError as exc:
                if not _is_busy(exc) or attempt >= self._busy_retries:
                    raise StoreUnavailable(f"{name} failed: {exc.orig or exc}") from exc
                attempt += 1
                logger.warning(
                    "Database busy during %s, retrying in %.1fs (attempt %d/%d)",
                    name,
                    self._busy_delay_s,
                    attempt,
                    self._busy_retries,
                )
                await asyncio.sleep(self._busy_delay_s)
            except SQLAlchemyError as exc:
                raise StoreUnavailable(f"{name} failed: {exc}") from exc

    async def _soft(
        self,
        name: str,
        operation: Callable[[], Awaitable[StoreResult]],
    ) -> StoreResult:
        """Like _attempt, but exhaustion becomes a failed StoreResult."""
        try:
            return await self._attempt(name, operation)
        except StoreUnavailable as exc:
            logger.error("%s", exc)
            return StoreResult.failure(str(exc))

    # ------------------------------------------------------------------
    # Device table lifecycle
    # ------------------------------------------------------------------

    async def _load_device_tables(self, conn: AsyncConnection) -> None:
        result = await conn.execute(
            select(DeviceTableRecord.device_name, DeviceTableRecord.table_name)
        )
        registered = result.all()

        def _reflect(sync_conn: Any) -> dict[str, Table]:
            inspector = inspect(sync_conn)
            tables: dict[str, Table] = {}
            for device_name, table_name in registered:
                if not inspector.has_table(table_name):
                    logger.warning(
                        "Registered table %s for device %s is missing",
                        table_name,
                        device_name,
                    )
                    continue
                tables[device_name] = Table(table_name, MetaData(), autoload_with=sync_conn)
            return tables

        self._device_tables = await conn.run_sync(_reflect)

    async def device_table_name(self, device_name: str) -> str | None:
        """Registered table name for *device_name*, or None."""

        async def _query() -> str | None:
            async with self._require_engine().connect() as conn:
                result = await conn.execute(
                    select(DeviceTableRecord.table_name).where(
                        DeviceTableRecord.device_name == device_name
                    )
                )
                return result.scalar_one_or_none()

        return await self._attempt("device_table_name", _query)

    async def device_table_exists(self, device_name: str) -> bool:
        """True when the device is registered and its table physically exists."""

        async def _query() -> bool:
            async with self._require_engine().connect() as conn:
                result = await conn.execute(
                    select(DeviceTableRecord.table_name).where(
                        DeviceTableRecord.device_name == device_name
                    )
                )
                table_name = result.scalar_one_or_none()
                if table_name is None:
                    return False
                return await conn.run_sync(
                    lambda sync_conn: inspect(sync_conn).has_table(table_name)
                )

        return await self._attempt("device_table_exists", _query)

    async def create_device_table(self, device_name: str, reference: str) -> str:
        """Provision the time series table for a device (idempotent).

        An already registered, physically present table is returned as-is,
        whatever its blueprint says today. Otherwise the schema is derived
        from the blueprint, the table is created if absent, and the registry
        row is upserted so it is never duplicated.

        Returns:
            str: The device's table name.

        Raises:
            TableNameConflict: Another device already owns the table name
                this device maps to (``Inv-1`` and ``Inv_1`` both map to
                ``device_Inv_1``).
            BlueprintNotFound: No blueprint for *reference*.
            SchemaIncomplete: Blueprint declares no registers.
            StoreUnavailable: Database stayed busy or failed.
        """
        if await self.device_table_exists(device_name):
            table_name = await self.device_table_name(device_name)
            assert table_name is not None
            if device_name not in self._device_tables:
                await self._reflect_device_table(device_name, table_name)
            logger.info("Table %s already exists for device %s", table_name, device_name)
            return table_name

        table_name = table_name_for(device_name)
        owner = await self._table_owner(table_name, device_name)
        if owner is not None:
            raise TableNameConflict(device_name, table_name, owner)

        schema = await self._schemas.schema_for(reference)
        table = schema.build_table(table_name, MetaData())

        async def _create() -> Table:
            async with self._require_engine().begin() as conn:
                await conn.run_sync(table.create, checkfirst=True)
                stmt = sqlite_insert(DeviceTableRecord).values(
                    device_name=device_name,
                    device_type=schema.device_type or "",
                    reference=reference,
                    table_name=table_name,
                    created_at=datetime.now(tz=UTC),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[DeviceTableRecord.device_name],
                    set_={
                        "device_type": stmt.excluded.device_type,
                        "reference": stmt.excluded.reference,
                        "table_name": stmt.excluded.table_name,
                    },
                )
                await conn.execute(stmt)
                # A pre-existing physical table keeps its own columns.
                return await conn.run_sync(
                    lambda sync_conn: Table(table_name, MetaData(), autoload_with=sync_conn)
                )

        self._device_tables[device_name] = await self._attempt("create_device_table", _create)
        logger.info(
            "Created table %s for device %s (%d registers from %s)",
            table_name,
            device_name,
            len(schema.registers),
            schema.source or reference,
        )
        return table_name

    async def _table_owner(self, table_name: str, device_name: str) -> str | None:
        """Another device registered under *table_name*, if any.

        SQLite identifiers are case-insensitive, so the match is too.
        """

        async def _query() -> str | None:
            async with self._require_engine().connect() as conn:
                result = await conn.execute(
                    select(DeviceTableRecord.device_name)
                    .where(func.lower(DeviceTableRecord.table_name) == table_name.lower())
                    .where(DeviceTableRecord.device_name != device_name)
                    .limit(1)
                )
                return result.scalar_one_or_none()

        return await self._attempt("table_owner", _query)

    async def _reflect_device_table(self, device_name: str, table_name: str) -> None:
        async def _reflect() -> Table:
            async with self._require_engine().connect() as conn:
                return await conn.run_sync(
                    lambda sync_conn: Table(table_name, MetaData(), autoload_with=sync_conn)
                )

        self._device_tables[device_name] = await self._attempt("reflect_device_table", _reflect)

    async def delete_device_table(self, device_name: str) -> bool:
        """Drop a device's table and its registry row.

        Returns:
            bool: False when no table was registered for the device.

        Raises:
            StoreUnavailable: Database stayed busy or failed.
        """
        table_name = await self.device_table_name(device_name)
        if table_name is None:
            logger.info("No table registered for device %s", device_name)
            return False

        async def _drop() -> None:
            async with self._require_engine().begin() as conn:
                await conn.run_sync(
                    lambda sync_conn: Table(table_name, MetaData()).drop(sync_conn, checkfirst=True)
                )
                await conn.execute(
                    delete(DeviceTableRecord).where(DeviceTableRecord.device_name == device_name)
                )

        await self._attempt("delete_device_table", _drop)
        self._device_tables.pop(device_name, None)
        logger.info("Deleted table %s for device %s", table_name, device_name)
        return True

    # ------------------------------------------------------------------
    # Hot path writes
    # ------------------------------------------------------------------

    async def insert_device_sample(
        self,
        device_name: str,
        registers: Mapping[str, float | None],
        timestamp_ms: int,
    ) -> StoreResult:
        """Append one sample to a device's table.

        Register keys that are not columns of the table are ignored. A
        timestamp collision is logged and the row skipped; it is not an
        error.
        """
        table = self._device_tables.get(device_name)
        if table is None:
            logger.debug("No table provisioned for device %s, sample not stored", device_name)
            return StoreResult.failure(f"no table provisioned for device {device_name}")

        columns = set(table.c.keys())
        row: dict[str, Any] = {
            name: value
            for name, value in registers.items()
            if name in columns and name not in _RESERVED_COLUMNS
        }
        row["timestamp"] = timestamp_ms
        row["sample_count"] = 1

        async def _insert() -> StoreResult:
            try:
                async with self._require_engine().begin() as conn:
                    await conn.execute(table.insert().values(row))
            except IntegrityError:
                logger.warning(
                    "Sample for %s at %d already stored (timestamp collision), skipped",
                    device_name,
                    timestamp_ms,
                )
                return StoreResult(success=True, count=0, error="duplicate timestamp")
            return StoreResult(success=True, count=1)

        return await self._soft("insert_device_sample", _insert)

    async def record_snapshot(self, snapshot: AggregateSnapshot) -> StoreResult:
        """Persist one aggregate snapshot to the history table."""
        values = {
            "solar": snapshot.solar,
            "grid": snapshot.grid,
            "genset": snapshot.genset,
            "load": snapshot.load,
            "timestamp": snapshot.timestamp,
            "batch_id": snapshot.batch_id,
            "received_devices": json.dumps(snapshot.received_devices),
            "created_at": datetime.now(tz=UTC),
        }

        async def _insert() -> StoreResult:
            async with self._require_engine().begin() as conn:
                result = await conn.execute(insert(PowerFlowRecord).values(**values))
            return StoreResult(
                success=True,
                count=1,
                data={"id": result.inserted_primary_key[0]},
            )

        return await self._soft("record_snapshot", _insert)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def history(
        self,
        *,
        minutes: float | None = None,
        hours: float | None = None,
    ) -> StoreResult:
        """Aggregate history for the trailing window, ascending by time.

        Exactly one of *minutes* or *hours* is expected; when both are given
        they are added together.

        Raises:
            ValueError: If neither is given or the window is not positive.
        """
        if minutes is None and hours is None:
            raise ValueError("history() needs minutes or hours")
        window_minutes = (minutes or 0) + (hours or 0) * 60
        if window_minutes <= 0:
            raise ValueError("history window must be positive")
        start_ms = self._clock_ms() - int(round(window_minutes * 60_000))
        return await self.history_range(start_ms)

    async def history_range(self, start_ms: int, end_ms: int | None = None) -> StoreResult:
        """Aggregate history with ``start_ms <= timestamp <= end_ms``, ascending."""
        stmt = select(
            PowerFlowRecord.solar,
            PowerFlowRecord.grid,
            PowerFlowRecord.genset,
            PowerFlowRecord.load,
            PowerFlowRecord.batch_id,
            PowerFlowRecord.timestamp,
        ).where(PowerFlowRecord.timestamp >= start_ms)
        if end_ms is not None:
            stmt = stmt.where(PowerFlowRecord.timestamp <= end_ms)
        stmt = stmt.order_by(PowerFlowRecord.timestamp.asc(), PowerFlowRecord.id.asc())

        async def _query() -> StoreResult:
            async with self._require_engine().connect() as conn:
                rows = (await conn.execute(stmt)).all()
            points = [_history_point(row) for row in rows]
            return StoreResult(success=True, data=points, count=len(points))

        return await self._soft("history", _query)

    async def stats(self, hours: float = 24) -> StoreResult:
        """Count plus avg/min/max of every metric over the trailing *hours*."""
        start_ms = self._clock_ms() - int(round(hours * 3_600_000))
        metrics = ("solar", "grid", "genset", "load")
        columns = [func.count(PowerFlowRecord.id)]
        for metric in metrics:
            column = getattr(PowerFlowRecord, metric)
            columns.extend([func.avg(column), func.min(column), func.max(column)])
        stmt = select(*columns).where(PowerFlowRecord.timestamp >= start_ms)

        async def _query() -> StoreResult:
            async with self._require_engine().connect() as conn:
                row = (await conn.execute(stmt)).one()
            data: dict[str, Any] = {"hours": hours, "count": int(row[0])}
            for index, metric in enumerate(metrics):
                avg, low, high = row[1 + index * 3 : 4 + index * 3]
                data[metric] = {
                    "avg": round(float(avg), 2) if avg is not None else None,
                    "min": float(low) if low is not None else None,
                    "max": float(high) if high is not None else None,
                }
            return StoreResult(success=True, data=data, count=int(row[0]))

        return await self._soft("stats", _query)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> StoreResult:
        """Delete aggregate rows strictly older than *retention_days*."""
        cutoff_ms = self._clock_ms() - retention_days * _MS_PER_DAY

        async def _delete() -> StoreResult:
            async with self._require_engine().begin() as conn:
                result = await conn.execute(
                    delete(PowerFlowRecord).where(PowerFlowRecord.timestamp < cutoff_ms)
                )
            deleted = result.rowcount or 0
            logger.info("Cleaned up %d rows older than %d days", deleted, retention_days)
            return StoreResult(
                success=True,
                count=deleted,
                data={"cutoff": cutoff_ms, "retention_days": retention_days},
            )

        return await self._soft("cleanup", _delete)

    async def database_size(self) -> StoreResult:
        """Report page count, page size, free pages and total size."""

        async def _query() -> StoreResult:
            async with self._require_engine().connect() as conn:
                page_count = (await conn.exec_driver_sql("PRAGMA page_count")).scalar_one()
                page_size = (await conn.exec_driver_sql("PRAGMA page_size")).scalar_one()
                freelist = (await conn.exec_driver_sql("PRAGMA freelist_count")).scalar_one()
            total = int(page_count) * int(page_size)
            return StoreResult(
                success=True,
                data={
                    "pages": int(page_count),
                    "page_size": int(page_size),
                    "freelist_pages": int(freelist),
                    "total_bytes": total,
                    "total_mb": round(total / 1024 / 1024, 2),
                },
            )

        return await self._soft("database_size", _query)

    async def ping(self) -> bool:
        """True if a trivial query succeeds."""
        if self._engine is None:
            return False

        async def _query() -> StoreResult:
            async with self._require_engine().connect() as conn:
                await conn.exec_driver_sql("SELECT 1")
            return StoreResult(success=True)

        return (await self._soft("ping", _query)).success
