"""Temperature sensor device model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import String, Float, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from thermotrack.models.base import Base, TimestampMixin


class MappingMethod(str, Enum):
    """Well-known mapping methods. Matcher rule names are stored as-is."""

    AUTO = "auto"
    MANUAL = "manual"
    EXISTING = "existing"
    NONE = "none"


class TemperatureDevice(Base, TimestampMixin):
    """A physical sensor identified by the label parsed from its export filename."""

    __tablename__ = "temperature_devices"

    # Deterministic slug of (building, label)
    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    building_code: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    building_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    label_normalized: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    # Room mapping
    room_key: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    mapping_method: Mapped[str] = mapped_column(String(50), default=MappingMethod.AUTO.value, nullable=False)
    mapping_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    mapping_manual: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mapping_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Watermarks ("YYYY-MM-DD HH:MM:SS" local strings sort chronologically)
    earliest_local_timestamp: Mapped[str | None] = mapped_column(String(19), nullable=True)
    latest_local_timestamp: Mapped[str | None] = mapped_column(String(19), nullable=True)
    earliest_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    latest_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_imported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def mapping(self) -> dict | None:
        """Mapping as a plain dict, or None when the device is unmapped."""
        if not self.room_key:
            return None
        return {
            "room_key": self.room_key,
            "method": self.mapping_method,
            "confidence": self.mapping_confidence,
            "manual": self.mapping_manual,
        }

    def __repr__(self) -> str:
        return f"<TemperatureDevice(id={self.id}, room={self.room_key})>"
