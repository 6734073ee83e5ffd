"""Snapshot computer.

For each configured time of day a room gets one snapshot per local date: the
reading closest to the target minute within the slot's tolerance, probing
``target - delta`` before ``target + delta`` at each distance so ties resolve
toward the earlier minute. Writes are skipped when nothing changed.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Mapping

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from thermotrack.core.metrics import record_snapshot_write
from thermotrack.models.temperature_snapshot import RoomSnapshot, SnapshotStatus
from thermotrack.services.temperature_aggregation import RoomDay
from thermotrack.services.temperature_matcher import to_snapshot_id
from thermotrack.services.temperature_time import (
    MINUTES_PER_DAY,
    format_minutes,
    parse_local_timestamp,
    parse_utc,
    zoned_time_to_utc,
)

logger = structlog.get_logger()

DEFAULT_TOLERANCE_MINUTES = 15
DEFAULT_SNAPSHOT_MINUTES = (8 * 60 + 30, 16 * 60 + 30)

# Fields compared to decide whether a stored snapshot is stale
_COMPARED_FIELDS = (
    "status",
    "temperature_f",
    "temperature_c",
    "humidity",
    "delta_minutes",
    "source_reading_local",
    "source_device_id",
)


@dataclass(frozen=True)
class SnapshotSlot:
    """A configured time of day with a search tolerance."""

    id: str
    minutes: int
    tolerance_minutes: int = DEFAULT_TOLERANCE_MINUTES
    label: str = ""

    @property
    def display_label(self) -> str:
        return self.label or format_minutes(self.minutes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SnapshotSlot":
        tolerance = data.get("tolerance_minutes")
        return cls(
            id=str(data["id"]),
            minutes=int(data["minutes"]),
            tolerance_minutes=DEFAULT_TOLERANCE_MINUTES if tolerance is None else int(tolerance),
            label=data.get("label") or "",
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.display_label,
            "minutes": self.minutes,
            "tolerance_minutes": self.tolerance_minutes,
        }


def default_snapshot_times() -> list[dict]:
    """08:30 and 16:30 with the default tolerance, each with a fresh id."""
    return [
        SnapshotSlot(id=str(uuid.uuid4()), minutes=minutes).to_dict()
        for minutes in DEFAULT_SNAPSHOT_MINUTES
    ]


def select_snapshot_sample(
    samples: Mapping[str, Mapping[str, Any]],
    target_minutes: int,
    tolerance_minutes: int = DEFAULT_TOLERANCE_MINUTES,
) -> tuple[Mapping[str, Any] | None, int | None]:
    """Return ``(sample, delta_minutes)`` for the first hit, or ``(None, None)``."""
    for delta in range(0, max(tolerance_minutes, 0) + 1):
        candidates = (target_minutes,) if delta == 0 else (target_minutes - delta, target_minutes + delta)
        for minute in candidates:
            if minute < 0 or minute >= MINUTES_PER_DAY:
                continue
            sample = samples.get(str(minute))
            if sample:
                return sample, delta
    return None, None


def compute_snapshot_values(day: RoomDay, slot: SnapshotSlot) -> dict:
    """Snapshot column values for one slot; status ``missing`` when nothing is in range."""
    sample, delta = select_snapshot_sample(day.samples, slot.minutes, slot.tolerance_minutes)
    if sample is None:
        return {
            "status": SnapshotStatus.MISSING.value,
            "temperature_f": None,
            "temperature_c": None,
            "humidity": None,
            "delta_minutes": None,
            "source_device_id": None,
            "source_device_label": None,
            "source_reading_local": None,
            "source_reading_utc": None,
        }

    local_raw = sample.get("local_timestamp")
    parts = parse_local_timestamp(local_raw)
    source_utc = zoned_time_to_utc(parts, day.timezone) if parts else None
    if source_utc is None:
        source_utc = parse_utc(sample.get("utc"))

    return {
        "status": SnapshotStatus.OK.value,
        "temperature_f": sample.get("temperature_f"),
        "temperature_c": sample.get("temperature_c"),
        "humidity": sample.get("humidity"),
        "delta_minutes": delta,
        "source_device_id": sample.get("device_id") or day.device_id,
        "source_device_label": sample.get("device_label") or day.device_label,
        "source_reading_local": local_raw,
        "source_reading_utc": source_utc,
    }


class SnapshotService:
    """Writes room snapshots for a day, skipping unchanged rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def recompute_for_day(self, day: RoomDay, slots: list[SnapshotSlot]) -> int:
        """Recompute every slot for ``day``; returns the number of rows written.

        The caller commits.
        """
        writes = 0
        for slot in slots:
            values = compute_snapshot_values(day, slot)
            snapshot_id = to_snapshot_id(day.building_code, day.room_key, day.date_local, slot.id)
            existing = await self.db.get(RoomSnapshot, snapshot_id)

            if existing is not None and all(
                getattr(existing, name) == values[name] for name in _COMPARED_FIELDS
            ):
                continue

            snapshot = existing or RoomSnapshot(id=snapshot_id)
            snapshot.building_code = day.building_code
            snapshot.building_name = day.building_name or day.building_code
            snapshot.room_key = day.room_key
            snapshot.room_name = day.room_name or day.room_key
            snapshot.date_local = day.date_local
            snapshot.snapshot_time_id = slot.id
            snapshot.snapshot_label = slot.display_label
            snapshot.target_minutes = slot.minutes
            snapshot.tolerance_minutes = slot.tolerance_minutes
            snapshot.timezone = day.timezone
            for name, value in values.items():
                setattr(snapshot, name, value)
            if existing is None:
                self.db.add(snapshot)

            writes += 1
            record_snapshot_write(values["status"])

        if writes:
            logger.debug(
                "Snapshots updated",
                room_key=day.room_key,
                date_local=day.date_local,
                writes=writes,
            )
        return writes
