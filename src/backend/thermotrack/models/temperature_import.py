"""Import record (duplicate-file detection / history) and import job models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import String, Float, Integer, Boolean, DateTime, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from thermotrack.models.base import Base, TimestampMixin


class TemperatureImport(Base, TimestampMixin):
    """One row per (building, file content hash)."""

    __tablename__ = "temperature_imports"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    building_code: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    building_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    file_name: Mapped[str] = mapped_column(String(500), default="", nullable=False)

    device_id: Mapped[str] = mapped_column(String(160), index=True, nullable=False)
    device_label: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    room_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    room_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mapping_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    mapping_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    mapping_manual: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    row_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    parsed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    new_readings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conflicts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    date_range_start: Mapped[str | None] = mapped_column(String(19), nullable=True)
    date_range_end: Mapped[str | None] = mapped_column(String(19), nullable=True)
    temperature_unit: Mapped[str] = mapped_column(String(1), default="F", nullable=False)

    def __repr__(self) -> str:
        return f"<TemperatureImport(building={self.building_code}, file={self.file_name}, hash={self.file_hash[:12]})>"


class ImportJobStatus(str, Enum):
    """Import job lifecycle."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TemperatureImportJob(Base, TimestampMixin):
    """Progress record for one import run."""

    __tablename__ = "temperature_import_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    building_code: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    building_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=ImportJobStatus.RUNNING.value, nullable=False)
    stage: Mapped[str] = mapped_column(String(100), default="Preparing", nullable=False)

    total_files: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_files: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_readings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conflict_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_file: Mapped[str | None] = mapped_column(String(500), nullable=True)

    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ImportJobStatus.COMPLETED.value, ImportJobStatus.FAILED.value)

    def __repr__(self) -> str:
        return f"<TemperatureImportJob(id={self.id}, status={self.status}, stage={self.stage})>"
