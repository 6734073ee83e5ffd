"""Temperature series queries.

Resolves the granularity for a requested window, then reads either the raw
per-device day rows (raw) or the per-room aggregate rows (hourly, daily).
Room and device identifiers are sent to the database in small IN batches
and the results merged here. Every series is downsampled to a fixed point
budget before it is returned.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from thermotrack.core.config import settings
from thermotrack.models.temperature_device import TemperatureDevice
from thermotrack.models.temperature_reading import DeviceDayReadings
from thermotrack.models.temperature_snapshot import RoomAggregate
from thermotrack.services.room_resolver import RoomResolver
from thermotrack.services.temperature_aggregation import (
    RoomSeries,
    SeriesPoint,
    TemperatureGranularity,
    build_aggregate_series,
    downsample_points,
    resolve_granularity,
)
from thermotrack.services.temperature_time import (
    InvalidDateRangeError,
    ensure_utc,
    format_date_in_timezone,
    get_zone,
    parse_utc,
)

logger = structlog.get_logger()


def chunked(values: Sequence[str], size: int) -> Iterable[list[str]]:
    """Split ``values`` into lists of at most ``size`` items."""
    size = max(1, size)
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


@dataclass
class SeriesResult:
    """Series response for one building."""

    granularity: TemperatureGranularity
    unit: str
    series: list[RoomSeries] = field(default_factory=list)
    last_updated: datetime | None = None


class TemperatureQueryService:
    """Query room temperature series at raw, hourly or daily resolution."""

    def __init__(
        self,
        db: AsyncSession,
        resolver: RoomResolver | None = None,
        chunk_size: int | None = None,
        max_points: int | None = None,
    ):
        self.db = db
        self.resolver = resolver
        self.chunk_size = chunk_size or settings.query_in_chunk_size
        self.max_points = max_points or settings.query_max_points

    async def fetch_series(
        self,
        building_code: str,
        timezone: str,
        room_keys: list[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        granularity: str | None = "auto",
        unit: str = "F",
    ) -> SeriesResult:
        """Fetch downsampled series for the requested rooms (all rooms when empty).

        Raises:
            InvalidTimezoneError: If ``timezone`` is unknown.
            InvalidDateRangeError: If ``start`` is after ``end`` or raw is requested without a range.
        """
        get_zone(timezone)
        start = ensure_utc(start) if start else None
        end = ensure_utc(end) if end else None
        if start and end and start > end:
            raise InvalidDateRangeError("Start must be before end")
        unit = "C" if (unit or "").upper() == "C" else "F"

        resolved = resolve_granularity(
            start,
            end,
            granularity,
            raw_max_hours=settings.raw_granularity_max_hours,
            hourly_max_days=settings.hourly_granularity_max_days,
        )
        start_date = format_date_in_timezone(start, timezone) if start else None
        end_date = format_date_in_timezone(end, timezone) if end else None
        room_keys = sorted(set(room_keys or []))

        if resolved == TemperatureGranularity.RAW:
            if start is None or end is None:
                raise InvalidDateRangeError("Raw series require a start and end")
            series = await self._raw_series(building_code, room_keys, start, end, start_date, end_date, unit)
        else:
            aggregates = await self._load_aggregates(building_code, room_keys, start_date, end_date)
            series = build_aggregate_series(
                aggregates,
                resolved,
                timezone,
                unit=unit,
                room_names=self._room_names(doc.room_key for doc in aggregates),
            )

        last_updated = None
        for entry in series:
            entry.points = downsample_points(entry.points, self.max_points)
            if entry.updated_at and (last_updated is None or ensure_utc(entry.updated_at) > last_updated):
                last_updated = ensure_utc(entry.updated_at)

        series.sort(key=lambda s: s.room_name)
        logger.debug(
            "Temperature series fetched",
            building_code=building_code,
            granularity=resolved.value,
            rooms=len(series),
        )
        return SeriesResult(granularity=resolved, unit=unit, series=series, last_updated=last_updated)

    async def _load_aggregates(
        self,
        building_code: str,
        room_keys: list[str],
        start_date: str | None,
        end_date: str | None,
    ) -> list[RoomAggregate]:
        base = select(RoomAggregate).where(RoomAggregate.building_code == building_code)
        if start_date:
            base = base.where(RoomAggregate.date_local >= start_date)
        if end_date:
            base = base.where(RoomAggregate.date_local <= end_date)

        if not room_keys:
            result = await self.db.execute(base.order_by(RoomAggregate.date_local))
            return list(result.scalars().all())

        rows: list[RoomAggregate] = []
        for chunk in chunked(room_keys, self.chunk_size):
            result = await self.db.execute(base.where(RoomAggregate.room_key.in_(chunk)))
            rows.extend(result.scalars().all())
        rows.sort(key=lambda row: (row.room_key, row.date_local))
        return rows

    async def _load_devices(self, building_code: str, room_keys: list[str]) -> list[TemperatureDevice]:
        base = select(TemperatureDevice).where(
            TemperatureDevice.building_code == building_code,
            TemperatureDevice.room_key.is_not(None),
        )
        if not room_keys:
            result = await self.db.execute(base)
            return list(result.scalars().all())

        devices: list[TemperatureDevice] = []
        for chunk in chunked(room_keys, self.chunk_size):
            result = await self.db.execute(base.where(TemperatureDevice.room_key.in_(chunk)))
            devices.extend(result.scalars().all())
        return devices

    async def _raw_series(
        self,
        building_code: str,
        room_keys: list[str],
        start: datetime,
        end: datetime,
        start_date: str,
        end_date: str,
        unit: str,
    ) -> list[RoomSeries]:
        devices = await self._load_devices(building_code, room_keys)
        device_rooms = {device.id: device.room_key for device in devices if device.room_key}
        if not device_rooms:
            return []

        days: list[DeviceDayReadings] = []
        for chunk in chunked(sorted(device_rooms), self.chunk_size):
            query = select(DeviceDayReadings).where(
                DeviceDayReadings.device_id.in_(chunk),
                DeviceDayReadings.date_local >= start_date,
                DeviceDayReadings.date_local <= end_date,
            )
            result = await self.db.execute(query)
            days.extend(result.scalars().all())

        value_key = "temperature_c" if unit == "C" else "temperature_f"
        # room -> instant -> values
        by_room: dict[str, dict[datetime, list[float]]] = {}
        updated: dict[str, datetime] = {}

        for day in days:
            room_key = device_rooms.get(day.device_id)
            if not room_key:
                continue
            if day.updated_at:
                day_updated = ensure_utc(day.updated_at)
                if room_key not in updated or day_updated > updated[room_key]:
                    updated[room_key] = day_updated
            instants = by_room.setdefault(room_key, {})
            for sample in (day.samples or {}).values():
                value = sample.get(value_key)
                utc = parse_utc(sample.get("utc"))
                if value is None or utc is None or utc < start or utc > end:
                    continue
                instants.setdefault(utc, []).append(value)

        names = self._room_names(by_room)
        series = []
        for room_key, instants in by_room.items():
            points = [
                SeriesPoint(
                    timestamp=instant,
                    value=sum(values) / len(values),
                    min=min(values),
                    max=max(values),
                    count=len(values),
                )
                for instant, values in sorted(instants.items())
            ]
            series.append(
                RoomSeries(
                    room_key=room_key,
                    room_name=names.get(room_key, room_key),
                    points=points,
                    updated_at=updated.get(room_key),
                )
            )
        return series

    def _room_names(self, room_keys: Iterable[str]) -> dict[str, str]:
        if self.resolver is None:
            return {}
        return {key: self.resolver.display_name(key) for key in room_keys if self.resolver.get(key)}
