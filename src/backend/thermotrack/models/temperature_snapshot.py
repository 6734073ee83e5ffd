"""Room snapshot and aggregate models (derived from day readings)."""

from datetime import datetime
from enum import Enum

from sqlalchemy import String, Float, Integer, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from thermotrack.models.base import Base, TimestampMixin


class SnapshotStatus(str, Enum):
    """Snapshot outcome."""

    OK = "ok"
    MISSING = "missing"


class RoomSnapshot(Base, TimestampMixin):
    """Closest reading to a configured time of day for one room and date."""

    __tablename__ = "temperature_room_snapshots"

    id: Mapped[str] = mapped_column(String(400), primary_key=True)
    building_code: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    building_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    room_key: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    room_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    date_local: Mapped[str] = mapped_column(String(10), index=True, nullable=False)

    snapshot_time_id: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_label: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    target_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    tolerance_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    temperature_f: Mapped[float | None] = mapped_column(Float, nullable=True)
    temperature_c: Mapped[float | None] = mapped_column(Float, nullable=True)
    humidity: Mapped[float | None] = mapped_column(Float, nullable=True)
    delta_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    source_device_id: Mapped[str | None] = mapped_column(String(160), nullable=True)
    source_device_label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_reading_local: Mapped[str | None] = mapped_column(String(19), nullable=True)
    source_reading_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<RoomSnapshot(room={self.room_key}, date={self.date_local}, slot={self.snapshot_time_id}, status={self.status})>"


class RoomAggregate(Base, TimestampMixin):
    """24 hourly buckets plus one daily bucket for a room and local date.

    Each bucket is ``None`` when empty, otherwise
    ``{count, min_f, max_f, avg_f, min_c, max_c, avg_c}``.
    """

    __tablename__ = "temperature_room_aggregates"

    id: Mapped[str] = mapped_column(String(400), primary_key=True)
    building_code: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    building_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    room_key: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    room_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    date_local: Mapped[str] = mapped_column(String(10), index=True, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)

    hourly: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    daily: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    sample_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    source_device_id: Mapped[str | None] = mapped_column(String(160), nullable=True)
    source_device_label: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<RoomAggregate(room={self.room_key}, date={self.date_local}, samples={self.sample_count})>"
