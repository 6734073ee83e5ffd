"""Per-building temperature monitoring settings."""

from sqlalchemy import String, Float, JSON
from sqlalchemy.orm import Mapped, mapped_column

from thermotrack.models.base import Base, TimestampMixin


class BuildingTemperatureSettings(Base, TimestampMixin):
    """Timezone, snapshot slots and ideal ranges for one building."""

    __tablename__ = "temperature_building_settings"

    building_code: Mapped[str] = mapped_column(String(100), primary_key=True)
    building_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    # IANA zone name, validated before any import or recompute
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)

    # Ordered list of {"id", "label", "minutes", "tolerance_minutes"}
    snapshot_times: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    ideal_temp_f_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    ideal_temp_f_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    # {space_type: {"min_f": float | None, "max_f": float | None}}
    ideal_ranges_by_space_type: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    def __repr__(self) -> str:
        return f"<BuildingTemperatureSettings(building={self.building_code}, tz={self.timezone})>"
