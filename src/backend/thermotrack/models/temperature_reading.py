"""Per-device, per-local-day raw temperature readings."""

from sqlalchemy import String, Integer, JSON
from sqlalchemy.orm import Mapped, mapped_column

from thermotrack.models.base import Base, TimestampMixin


class DeviceDayReadings(Base, TimestampMixin):
    """Canonical raw store: minute-of-day -> sample for one device and date.

    Samples are keyed by the minute as a string ("0".."1439") and hold
    ``temperature_f``, ``temperature_c``, ``humidity``, ``local_timestamp``
    and ``utc`` (ISO-8601). Snapshots and aggregates are derived from here.

    ``version`` is the SQLAlchemy version counter: every UPDATE is issued with
    ``WHERE version = <loaded>`` so two runs cannot both rewrite the same day
    from a stale read.
    """

    __tablename__ = "temperature_device_readings"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    building_code: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    building_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    device_id: Mapped[str] = mapped_column(String(160), index=True, nullable=False)
    device_label: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    date_local: Mapped[str] = mapped_column(String(10), index=True, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)

    # Replace the dict wholesale on change; in-place mutation is not tracked
    samples: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<DeviceDayReadings(device={self.device_id}, date={self.date_local}, samples={self.sample_count})>"
