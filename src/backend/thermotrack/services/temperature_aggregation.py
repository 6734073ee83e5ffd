"""Hourly/daily aggregation, granularity selection and downsampling.

The bucket, series and downsample helpers are pure functions of their
inputs. AggregateService persists one RoomAggregate per room and local date,
always rebuilt from that day's full sample map.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Mapping

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from thermotrack.models.temperature_snapshot import RoomAggregate
from thermotrack.services.temperature_matcher import to_aggregate_id
from thermotrack.services.temperature_time import local_date_to_utc

logger = structlog.get_logger()

HOURS_PER_DAY = 24
DAILY_POINT_HOUR = 12


class TemperatureGranularity(str, Enum):
    """Time-series resolution."""

    RAW = "raw"
    HOURLY = "hourly"
    DAILY = "daily"


def resolve_granularity(
    start: datetime | None,
    end: datetime | None,
    requested: str | None = None,
    raw_max_hours: int = 48,
    hourly_max_days: int = 45,
) -> TemperatureGranularity:
    """Pick a resolution from the span unless the caller forces one."""
    if requested and requested != "auto":
        return TemperatureGranularity(requested)
    if start is None or end is None:
        return TemperatureGranularity.HOURLY
    span = end - start
    if span <= timedelta(hours=raw_max_hours):
        return TemperatureGranularity.RAW
    if span <= timedelta(days=hourly_max_days):
        return TemperatureGranularity.HOURLY
    return TemperatureGranularity.DAILY


# ==================== Buckets ====================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


@dataclass
class _Accumulator:
    count: int = 0
    min_f: float | None = None
    max_f: float | None = None
    sum_f: float = 0.0
    min_c: float | None = None
    max_c: float | None = None
    sum_c: float = 0.0

    def add(self, sample: Mapping[str, Any]) -> None:
        temp_f = sample.get("temperature_f")
        temp_c = sample.get("temperature_c")
        has_f = _is_number(temp_f)
        has_c = _is_number(temp_c)
        if not has_f and not has_c:
            return
        self.count += 1
        if has_f:
            self.min_f = temp_f if self.min_f is None else min(self.min_f, temp_f)
            self.max_f = temp_f if self.max_f is None else max(self.max_f, temp_f)
            self.sum_f += temp_f
        if has_c:
            self.min_c = temp_c if self.min_c is None else min(self.min_c, temp_c)
            self.max_c = temp_c if self.max_c is None else max(self.max_c, temp_c)
            self.sum_c += temp_c

    def finalize(self) -> dict | None:
        if self.count == 0:
            return None
        return {
            "count": self.count,
            "min_f": self.min_f,
            "max_f": self.max_f,
            "avg_f": None if self.min_f is None else self.sum_f / self.count,
            "min_c": self.min_c,
            "max_c": self.max_c,
            "avg_c": None if self.min_c is None else self.sum_c / self.count,
        }


@dataclass
class DayAggregates:
    """Finalized buckets for one day."""

    hourly: list[dict | None]
    daily: dict | None
    sample_count: int


def build_hourly_aggregates(samples: Mapping[str, Mapping[str, Any]]) -> DayAggregates:
    """Fold a day's minute -> sample map into 24 hourly buckets and a daily bucket.

    Minute keys that are not integers in 0..1439 are ignored. Always run over
    the full day, never incrementally.
    """
    hourly = [_Accumulator() for _ in range(HOURS_PER_DAY)]
    daily = _Accumulator()

    for minute_key, sample in (samples or {}).items():
        try:
            minute = int(minute_key)
        except (TypeError, ValueError):
            continue
        hour = minute // 60
        if hour < 0 or hour >= HOURS_PER_DAY or not sample:
            continue
        hourly[hour].add(sample)
        daily.add(sample)

    return DayAggregates(
        hourly=[bucket.finalize() for bucket in hourly],
        daily=daily.finalize(),
        sample_count=daily.count,
    )


def merge_room_samples(
    device_days: Iterable[tuple[str, str, Mapping[str, Mapping[str, Any]]]],
) -> dict[str, dict]:
    """Fold ``(device_id, device_label, samples)`` of one room and date into one minute map.

    The lowest device id wins a minute that several devices reported. Each
    entry is tagged with the device it came from.
    """
    merged: dict[str, dict] = {}
    for device_id, device_label, samples in sorted(device_days, key=lambda day: day[0]):
        for minute_key, sample in (samples or {}).items():
            if minute_key in merged or not sample:
                continue
            merged[minute_key] = {**sample, "device_id": device_id, "device_label": device_label}
    return merged


@dataclass
class RoomDay:
    """A room's samples for one local date.

    ``device_id`` and ``device_label`` name the lowest-id contributing device;
    samples merged from several devices carry their own.
    """

    building_code: str
    building_name: str
    room_key: str
    room_name: str
    date_local: str
    timezone: str
    device_id: str
    device_label: str
    samples: dict[str, dict] = field(default_factory=dict)


class AggregateService:
    """Persists hourly/daily aggregates for a room day."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def recompute_for_day(self, day: RoomDay) -> bool:
        """Rebuild the room's aggregate for ``day``.

        Returns True when the stored row was created or changed. The caller
        commits.
        """
        aggregates = build_hourly_aggregates(day.samples)
        aggregate_id = to_aggregate_id(day.building_code, day.room_key, day.date_local)
        doc = await self.db.get(RoomAggregate, aggregate_id)

        if doc is None:
            doc = RoomAggregate(id=aggregate_id)
            self.db.add(doc)
        elif (
            doc.hourly == aggregates.hourly
            and doc.daily == aggregates.daily
            and doc.sample_count == aggregates.sample_count
            and doc.room_key == day.room_key
            and doc.source_device_id == day.device_id
        ):
            return False

        doc.building_code = day.building_code
        doc.building_name = day.building_name or day.building_code
        doc.room_key = day.room_key
        doc.room_name = day.room_name or day.room_key
        doc.date_local = day.date_local
        doc.timezone = day.timezone
        doc.hourly = aggregates.hourly
        doc.daily = aggregates.daily
        doc.sample_count = aggregates.sample_count
        doc.source_device_id = day.device_id
        doc.source_device_label = day.device_label

        logger.debug(
            "Room aggregate updated",
            room_key=day.room_key,
            date_local=day.date_local,
            sample_count=aggregates.sample_count,
        )
        return True


# ==================== Series ====================


@dataclass
class SeriesPoint:
    """One chart point."""

    timestamp: datetime
    value: float
    min: float | None = None
    max: float | None = None
    count: int = 1


@dataclass
class RoomSeries:
    """Time series for one room."""

    room_key: str
    room_name: str
    points: list[SeriesPoint] = field(default_factory=list)
    updated_at: datetime | None = None


def _bucket_point(bucket: Mapping[str, Any], timestamp: datetime, unit: str) -> SeriesPoint | None:
    suffix = "c" if unit == "C" else "f"
    value = bucket.get(f"avg_{suffix}")
    if not _is_number(value):
        return None
    return SeriesPoint(
        timestamp=timestamp,
        value=value,
        min=bucket.get(f"min_{suffix}"),
        max=bucket.get(f"max_{suffix}"),
        count=bucket.get("count") or 0,
    )


def build_aggregate_series(
    aggregates: Iterable[Any],
    granularity: TemperatureGranularity,
    timezone: str,
    unit: str = "F",
    room_names: Mapping[str, str] | None = None,
) -> list[RoomSeries]:
    """Expand RoomAggregate rows into per-room point series.

    Hourly buckets are placed at local ``HH:00``; daily buckets at local noon.
    """
    room_names = room_names or {}
    by_room: dict[str, RoomSeries] = {}

    for doc in aggregates:
        room_key = doc.room_key or "unknown"
        entry = by_room.get(room_key)
        if entry is None:
            entry = RoomSeries(
                room_key=room_key,
                room_name=room_names.get(room_key) or doc.room_name or room_key,
            )
            by_room[room_key] = entry
        updated_at = getattr(doc, "updated_at", None)
        if updated_at and (entry.updated_at is None or updated_at > entry.updated_at):
            entry.updated_at = updated_at

        if not doc.date_local:
            continue

        if granularity == TemperatureGranularity.DAILY:
            if not doc.daily:
                continue
            timestamp = local_date_to_utc(doc.date_local, DAILY_POINT_HOUR, timezone)
            if timestamp is None:
                continue
            point = _bucket_point(doc.daily, timestamp, unit)
            if point:
                entry.points.append(point)
            continue

        for hour, bucket in enumerate(doc.hourly or []):
            if not bucket or not bucket.get("count"):
                continue
            timestamp = local_date_to_utc(doc.date_local, hour, timezone)
            if timestamp is None:
                continue
            point = _bucket_point(bucket, timestamp, unit)
            if point:
                entry.points.append(point)

    for series in by_room.values():
        series.points.sort(key=lambda p: p.timestamp)
    return list(by_room.values())


def downsample_points(points: list[SeriesPoint], max_points: int) -> list[SeriesPoint]:
    """Average fixed-size contiguous buckets, keeping each bucket's middle point.

    The input must be sorted by timestamp. Returns at most ``max_points``.
    """
    if max_points <= 0 or len(points) <= max_points:
        return list(points)
    bucket_size = math.ceil(len(points) / max_points)
    result: list[SeriesPoint] = []
    for start in range(0, len(points), bucket_size):
        chunk = points[start:start + bucket_size]
        if not chunk:
            continue
        average = sum(p.value for p in chunk) / len(chunk)
        middle = chunk[len(chunk) // 2]
        result.append(
            SeriesPoint(
                timestamp=middle.timestamp,
                value=average,
                min=middle.min,
                max=middle.max,
                count=middle.count,
            )
        )
    return result


# ==================== Ideal ranges ====================


def normalize_ideal_range(min_f: float | None, max_f: float | None) -> dict | None:
    """Return ``{"min_f", "max_f"}`` or None when unset or inverted."""
    min_val = float(min_f) if _is_number(min_f) else None
    max_val = float(max_f) if _is_number(max_f) else None
    if min_val is None and max_val is None:
        return None
    if min_val is not None and max_val is not None and min_val > max_val:
        return None
    return {"min_f": min_val, "max_f": max_val}


def get_temperature_status(value_f: float | None, ideal_range: Mapping[str, Any] | None) -> str:
    """Classify a Fahrenheit reading against an ideal range."""
    if not _is_number(value_f) or not ideal_range:
        return "unknown"
    min_f = ideal_range.get("min_f")
    max_f = ideal_range.get("max_f")
    if _is_number(min_f) and value_f < min_f:
        return "below"
    if _is_number(max_f) and value_f > max_f:
        return "above"
    return "ok"
