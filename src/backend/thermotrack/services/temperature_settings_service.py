"""Per-building temperature settings: timezone, snapshot slots and ideal ranges."""

import uuid
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from thermotrack.core.config import settings
from thermotrack.models.temperature_settings import BuildingTemperatureSettings
from thermotrack.services.temperature_aggregation import normalize_ideal_range
from thermotrack.services.temperature_snapshots import (
    DEFAULT_TOLERANCE_MINUTES,
    SnapshotSlot,
    default_snapshot_times,
)
from thermotrack.services.temperature_time import (
    MINUTES_PER_DAY,
    InvalidTimezoneError,
    TemperatureError,
    is_valid_timezone,
)

logger = structlog.get_logger()


class InvalidSettingsError(TemperatureError, ValueError):
    """Settings payload failed validation."""
    pass


class TemperatureSettingsService:
    """Service for building temperature settings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_settings(
        self,
        building_code: str,
        building_name: str = "",
        create: bool = False,
    ) -> BuildingTemperatureSettings:
        """Stored settings, or defaults for a building that has none.

        Defaults are only persisted when ``create`` is set, so the generated
        slot ids stay stable across calls once an import has run.
        """
        row = await self.db.get(BuildingTemperatureSettings, building_code)
        if row is not None:
            return row

        row = BuildingTemperatureSettings(
            building_code=building_code,
            building_name=building_name or building_code,
            timezone=settings.default_timezone,
            snapshot_times=default_snapshot_times(),
            ideal_temp_f_min=None,
            ideal_temp_f_max=None,
            ideal_ranges_by_space_type={},
        )
        if create:
            self.db.add(row)
            await self.db.commit()
            logger.info("Default temperature settings created", building_code=building_code)
        return row

    async def update_settings(
        self,
        building_code: str,
        building_name: str | None = None,
        timezone: str | None = None,
        snapshot_times: list[dict[str, Any]] | None = None,
        ideal_temp_f_min: float | None = None,
        ideal_temp_f_max: float | None = None,
        ideal_ranges_by_space_type: dict[str, dict[str, Any]] | None = None,
    ) -> BuildingTemperatureSettings:
        """Validate and persist settings.

        The ideal range is always replaced; other fields left as None are kept.

        Raises:
            InvalidTimezoneError: If ``timezone`` is not an IANA zone.
            InvalidSettingsError: If a slot or range is malformed.
        """
        if timezone is not None and not is_valid_timezone(timezone):
            raise InvalidTimezoneError(f"Invalid timezone: {timezone!r}")

        row = await self.db.get(BuildingTemperatureSettings, building_code)
        if row is None:
            row = await self.get_settings(building_code, building_name or "")
            self.db.add(row)

        if building_name:
            row.building_name = building_name
        if timezone is not None:
            row.timezone = timezone
        if snapshot_times is not None:
            row.snapshot_times = [slot.to_dict() for slot in self._validate_slots(snapshot_times)]

        ideal = normalize_ideal_range(ideal_temp_f_min, ideal_temp_f_max)
        if (ideal_temp_f_min is not None or ideal_temp_f_max is not None) and ideal is None:
            raise InvalidSettingsError("Ideal minimum must not exceed the maximum")
        row.ideal_temp_f_min = ideal["min_f"] if ideal else None
        row.ideal_temp_f_max = ideal["max_f"] if ideal else None

        if ideal_ranges_by_space_type is not None:
            ranges = {}
            for space_type, values in ideal_ranges_by_space_type.items():
                normalized = normalize_ideal_range(values.get("min_f"), values.get("max_f"))
                if normalized:
                    ranges[space_type] = normalized
            row.ideal_ranges_by_space_type = ranges

        await self.db.commit()
        await self.db.refresh(row)

        logger.info("Temperature settings updated", building_code=building_code, timezone=row.timezone)
        return row

    @staticmethod
    def _validate_slots(raw_slots: list[dict[str, Any]]) -> list[SnapshotSlot]:
        slots = []
        seen_ids = set()
        for raw in raw_slots:
            minutes = raw.get("minutes")
            if not isinstance(minutes, int) or isinstance(minutes, bool) or not 0 <= minutes < MINUTES_PER_DAY:
                raise InvalidSettingsError(f"Snapshot minutes must be 0-{MINUTES_PER_DAY - 1}")
            tolerance = raw.get("tolerance_minutes")
            if tolerance is None:
                tolerance = DEFAULT_TOLERANCE_MINUTES
            if not isinstance(tolerance, int) or tolerance < 0:
                raise InvalidSettingsError("Snapshot tolerance must be a non-negative integer")

            slot = SnapshotSlot(
                id=str(raw.get("id") or uuid.uuid4()),
                minutes=minutes,
                tolerance_minutes=tolerance,
                label=raw.get("label") or "",
            )
            if slot.id in seen_ids:
                raise InvalidSettingsError(f"Duplicate snapshot id {slot.id}")
            seen_ids.add(slot.id)
            slots.append(slot)
        return sorted(slots, key=lambda s: s.minutes)


def snapshot_slots(row: BuildingTemperatureSettings) -> list[SnapshotSlot]:
    """Parsed snapshot slots of a settings row."""
    return [SnapshotSlot.from_dict(raw) for raw in row.snapshot_times or []]


def resolve_ideal_range(row: BuildingTemperatureSettings, space_type: str | None = None) -> dict | None:
    """Space-type range when configured, else the building-wide range."""
    if space_type:
        by_type = (row.ideal_ranges_by_space_type or {}).get(space_type)
        if by_type:
            normalized = normalize_ideal_range(by_type.get("min_f"), by_type.get("max_f"))
            if normalized:
                return normalized
    return normalize_ideal_range(row.ideal_temp_f_min, row.ideal_temp_f_max)
