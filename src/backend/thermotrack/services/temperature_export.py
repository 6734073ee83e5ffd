"""CSV exports of room snapshots and raw device readings."""

import csv
import io
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from thermotrack.models.temperature_device import TemperatureDevice
from thermotrack.models.temperature_reading import DeviceDayReadings
from thermotrack.models.temperature_snapshot import RoomSnapshot
from thermotrack.services.room_resolver import RoomResolver
from thermotrack.services.temperature_query_service import chunked
from thermotrack.services.temperature_time import ensure_utc, validate_date_range

logger = structlog.get_logger()

SNAPSHOT_CSV_HEADERS = [
    "Building",
    "Room",
    "Date",
    "Snapshot Time",
    "Temperature F",
    "Temperature C",
    "Humidity",
    "Status",
    "Timezone",
    "Delta Minutes",
    "Source Local Timestamp",
    "Source UTC Timestamp",
    "Device Label",
]

RAW_CSV_HEADERS = [
    "Building",
    "Room",
    "Device",
    "Local Timestamp",
    "UTC Timestamp",
    "Temperature F",
    "Temperature C",
    "Humidity",
]


def _fmt(value: Any, digits: int = 2) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return f"{value:.{digits}f}"
    return str(value)


def _write_csv(headers: list[str], rows: list[list[Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue()


class TemperatureExportService:
    """Builds CSV documents from stored snapshots and readings."""

    def __init__(self, db: AsyncSession, resolver: RoomResolver | None = None, chunk_size: int = 10):
        self.db = db
        self.resolver = resolver
        self.chunk_size = chunk_size

    async def export_snapshots_csv(
        self,
        building_code: str,
        start_date: str,
        end_date: str,
        room_keys: list[str] | None = None,
        snapshot_ids: list[str] | None = None,
    ) -> str:
        """Snapshots in the local date range, ordered by date, room and target time."""
        start_date, end_date = validate_date_range(start_date, end_date)
        query = select(RoomSnapshot).where(
            RoomSnapshot.building_code == building_code,
            RoomSnapshot.date_local >= start_date,
            RoomSnapshot.date_local <= end_date,
        )
        snapshots: list[RoomSnapshot] = []
        if room_keys:
            for chunk in chunked(sorted(set(room_keys)), self.chunk_size):
                result = await self.db.execute(query.where(RoomSnapshot.room_key.in_(chunk)))
                snapshots.extend(result.scalars().all())
        else:
            result = await self.db.execute(query)
            snapshots.extend(result.scalars().all())

        if snapshot_ids:
            wanted = set(snapshot_ids)
            snapshots = [s for s in snapshots if s.snapshot_time_id in wanted]
        snapshots.sort(key=lambda s: (s.date_local, s.room_name, s.target_minutes))

        rows = [
            [
                snapshot.building_name or snapshot.building_code,
                self._room_name(snapshot.room_key, snapshot.room_name),
                snapshot.date_local,
                snapshot.snapshot_label,
                _fmt(snapshot.temperature_f),
                _fmt(snapshot.temperature_c),
                _fmt(snapshot.humidity, 1),
                snapshot.status,
                snapshot.timezone,
                _fmt(snapshot.delta_minutes),
                snapshot.source_reading_local or "",
                ensure_utc(snapshot.source_reading_utc).isoformat() if snapshot.source_reading_utc else "",
                snapshot.source_device_label or "",
            ]
            for snapshot in snapshots
        ]
        logger.info("Snapshot export built", building_code=building_code, rows=len(rows))
        return _write_csv(SNAPSHOT_CSV_HEADERS, rows)

    async def export_raw_csv(
        self,
        building_code: str,
        start_date: str,
        end_date: str,
        room_keys: list[str] | None = None,
    ) -> str:
        """One row per stored reading of the building's mapped devices."""
        start_date, end_date = validate_date_range(start_date, end_date)
        device_query = select(TemperatureDevice).where(TemperatureDevice.building_code == building_code)
        result = await self.db.execute(device_query)
        devices = {
            device.id: device
            for device in result.scalars().all()
            if not room_keys or device.room_key in room_keys
        }

        days: list[DeviceDayReadings] = []
        for chunk in chunked(sorted(devices), self.chunk_size):
            query = select(DeviceDayReadings).where(
                DeviceDayReadings.device_id.in_(chunk),
                DeviceDayReadings.date_local >= start_date,
                DeviceDayReadings.date_local <= end_date,
            )
            result = await self.db.execute(query)
            days.extend(result.scalars().all())
        days.sort(key=lambda d: (d.device_id, d.date_local))

        rows = []
        for day in days:
            device = devices[day.device_id]
            room = self._room_name(device.room_key, "") if device.room_key else ""
            for minute_key in sorted(day.samples or {}, key=int):
                sample = day.samples[minute_key]
                rows.append([
                    day.building_name or day.building_code,
                    room,
                    device.label or day.device_label,
                    sample.get("local_timestamp") or "",
                    sample.get("utc") or "",
                    _fmt(sample.get("temperature_f")),
                    _fmt(sample.get("temperature_c")),
                    _fmt(sample.get("humidity"), 1),
                ])
        logger.info("Raw export built", building_code=building_code, rows=len(rows))
        return _write_csv(RAW_CSV_HEADERS, rows)

    def _room_name(self, room_key: str, stored: str) -> str:
        if self.resolver is not None and self.resolver.get(room_key):
            return self.resolver.display_name(room_key)
        return stored or room_key
