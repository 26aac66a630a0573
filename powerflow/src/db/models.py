"""
SQLAlchemy ORM models for the hub database.

Two static tables live here: the ``device_tables`` registry mapping device
names to their dynamically created time series tables, and the shared
``power_flow_analysis`` aggregate history. Per-device tables are not ORM
models; their layout comes from the blueprint via DeviceSchema.

CHANGELOG:
- 2026-10-08: Initial creation (STORY-105)

TODO:
- None
"""

import datetime

from sqlalchemy import BigInteger, DateTime, Double, Index, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for the static hub tables."""

    pass


class DeviceTableRecord(Base):
    """Registry row linking a device to its time series table.

    Attributes:
        device_name: Unique device name (primary key, one row per device).
        device_type: ``header.device_type`` of the blueprint at creation time.
        reference: Blueprint reference the table was derived from.
        table_name: Physical table holding the device's samples.
        created_at: When the table was provisioned.
    """

    __tablename__ = "device_tables"

    device_name: Mapped[str] = mapped_column(Text, primary_key=True)
    device_type: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reference: Mapped[str] = mapped_column(Text, nullable=False)
    table_name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        """Return string representation of the DeviceTableRecord."""
        return (
            f"DeviceTableRecord(device_name={self.device_name!r}, "
            f"table_name={self.table_name!r}, reference={self.reference!r})"
        )


class PowerFlowRecord(Base):
    """One persisted AggregateSnapshot.

    Attributes:
        id: Autoincrement row id.
        solar: Solar production in watts.
        grid: Grid power in watts (negative = export).
        genset: Generator power in watts.
        load: solar + grid + genset.
        timestamp: Batch capture time in epoch milliseconds (indexed).
        created_at: Insert time in UTC.
        batch_id: Upstream batch identifier.
        received_devices: JSON list of categories with fresh data.
    """

    __tablename__ = "power_flow_analysis"
    __table_args__ = (Index("idx_power_flow_timestamp", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    solar: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    grid: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    genset: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    load: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    batch_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_devices: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of the PowerFlowRecord."""
        return (
            f"PowerFlowRecord(id={self.id!r}, timestamp={self.timestamp!r}, "
            f"load={self.load!r})"
        )
