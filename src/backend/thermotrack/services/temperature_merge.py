"""Sample merge engine.

Merges one device's parsed samples into its per-day reading rows. A minute
that already holds a reading is never overwritten: identical values are a
no-op re-import, differing values are counted as conflicts and dropped.

Each date is written in its own transaction guarded by the row's version
counter. If another run changed the row between our read and our write, the
day is re-read and the merge recomputed instead of overwriting that run's
samples.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from thermotrack.core.config import settings
from thermotrack.core.metrics import record_merge
from thermotrack.models.temperature_device import TemperatureDevice
from thermotrack.models.temperature_reading import DeviceDayReadings
from thermotrack.services.temperature_csv import ParsedSample
from thermotrack.services.temperature_matcher import to_device_day_id
from thermotrack.services.temperature_time import ensure_utc, zoned_time_to_utc

logger = structlog.get_logger()

# Fields that must all match for a re-imported minute to count as the same reading
SAMPLE_IDENTITY_FIELDS = ("temperature_f", "temperature_c", "humidity", "local_timestamp")


class MergeConflictError(Exception):
    """A day kept changing underneath the merge and retries ran out."""
    pass


@dataclass
class DeviceBatch:
    """Identity of the device whose samples are being merged."""

    building_code: str
    building_name: str
    device_id: str
    device_label: str
    timezone: str


@dataclass
class MergeResult:
    """Outcome of merging one device batch."""

    new_readings: int = 0
    conflicts: int = 0
    # date -> full merged sample map, only for dates that gained readings
    updated_days: dict[str, dict] = field(default_factory=dict)
    earliest_local: str = ""
    latest_local: str = ""
    earliest_utc: datetime | None = None
    latest_utc: datetime | None = None


def sample_entry(sample: ParsedSample, utc: datetime | None) -> dict:
    """JSON form of a sample as stored under its minute key."""
    return {
        "temperature_f": sample.temperature_f,
        "temperature_c": sample.temperature_c,
        "humidity": sample.humidity,
        "local_timestamp": sample.local_timestamp,
        "utc": utc.isoformat() if utc else None,
    }


def is_same_sample(existing: dict, incoming: dict) -> bool:
    """Exact equality over the identity fields."""
    return all(existing.get(name) == incoming.get(name) for name in SAMPLE_IDENTITY_FIELDS)


def group_samples_by_date(
    samples: Iterable[ParsedSample],
    timezone: str,
    result: MergeResult,
) -> dict[str, dict[str, dict]]:
    """Group samples into ``date -> minute -> entry`` and fold batch watermarks into ``result``.

    A later sample for the same minute replaces an earlier one in the batch.
    """
    by_date: dict[str, dict[str, dict]] = {}
    for sample in samples:
        local_raw = sample.local_timestamp
        if not result.latest_local or local_raw > result.latest_local:
            result.latest_local = local_raw
        if not result.earliest_local or local_raw < result.earliest_local:
            result.earliest_local = local_raw

        utc = zoned_time_to_utc(sample.local, timezone)
        if utc is not None:
            if result.latest_utc is None or utc > result.latest_utc:
                result.latest_utc = utc
            if result.earliest_utc is None or utc < result.earliest_utc:
                result.earliest_utc = utc

        by_date.setdefault(sample.local.date_key, {})[str(sample.local.minute_of_day)] = sample_entry(sample, utc)
    return by_date


def apply_watermarks(device: TemperatureDevice, result: MergeResult) -> bool:
    """Extend the device's seen-range watermarks; returns True if any moved."""
    changed = False
    if result.latest_local and (
        not device.latest_local_timestamp or result.latest_local > device.latest_local_timestamp
    ):
        device.latest_local_timestamp = result.latest_local
        changed = True
    if result.earliest_local and (
        not device.earliest_local_timestamp or result.earliest_local < device.earliest_local_timestamp
    ):
        device.earliest_local_timestamp = result.earliest_local
        changed = True
    if result.latest_utc and (
        device.latest_utc is None or result.latest_utc > ensure_utc(device.latest_utc)
    ):
        device.latest_utc = result.latest_utc
        changed = True
    if result.earliest_utc and (
        device.earliest_utc is None or result.earliest_utc < ensure_utc(device.earliest_utc)
    ):
        device.earliest_utc = result.earliest_utc
        changed = True
    return changed


class TemperatureMergeService:
    """Merges device samples into DeviceDayReadings rows."""

    def __init__(self, db: AsyncSession, max_retries: int | None = None):
        self.db = db
        self.max_retries = max_retries or settings.merge_max_retries

    async def merge_device_samples(
        self,
        batch: DeviceBatch,
        samples: list[ParsedSample],
        on_progress: Callable[[int], Awaitable[None]] | None = None,
    ) -> MergeResult:
        """Merge ``samples`` date by date.

        ``on_progress`` is awaited after each date with the number of batch
        samples that date covered. Commits once per date that gained readings.

        Raises:
            MergeConflictError: If a date could not be written within the retry budget.
        """
        result = MergeResult()
        by_date = group_samples_by_date(samples, batch.timezone, result)
        rows_by_date = Counter(sample.local.date_key for sample in samples)

        for date_local in sorted(by_date):
            entries = by_date[date_local]
            new_count, conflicts, merged = await self._merge_day(batch, date_local, entries)
            result.new_readings += new_count
            result.conflicts += conflicts
            if new_count:
                result.updated_days[date_local] = merged
            if on_progress is not None:
                await on_progress(rows_by_date[date_local])

        record_merge(result.new_readings, result.conflicts)
        logger.info(
            "Device samples merged",
            device_id=batch.device_id,
            dates=len(by_date),
            new_readings=result.new_readings,
            conflicts=result.conflicts,
        )
        return result

    async def _merge_day(
        self,
        batch: DeviceBatch,
        date_local: str,
        entries: dict[str, dict],
    ) -> tuple[int, int, dict]:
        """Merge one date with version-checked writes; returns (new, conflicts, merged samples)."""
        day_id = to_device_day_id(batch.device_id, date_local)

        for attempt in range(1, self.max_retries + 1):
            day = await self._load_day(day_id)
            existing = dict(day.samples or {}) if day is not None else {}

            new_entries: dict[str, dict] = {}
            conflicts = 0
            for minute_key, entry in entries.items():
                current = existing.get(minute_key)
                if current is None:
                    new_entries[minute_key] = entry
                elif not is_same_sample(current, entry):
                    conflicts += 1

            if not new_entries:
                return 0, conflicts, existing

            merged = {**existing, **new_entries}
            if day is None:
                day = DeviceDayReadings(
                    id=day_id,
                    building_code=batch.building_code,
                    building_name=batch.building_name or batch.building_code,
                    device_id=batch.device_id,
                    date_local=date_local,
                )
                self.db.add(day)
            day.device_label = batch.device_label
            day.timezone = batch.timezone
            day.samples = merged
            day.sample_count = len(merged)

            try:
                await self.db.commit()
            except (StaleDataError, IntegrityError) as e:
                await self.db.rollback()
                logger.warning(
                    "Day readings changed during merge, retrying",
                    day_id=day_id,
                    attempt=attempt,
                    error=str(e),
                )
                continue

            return len(new_entries), conflicts, merged

        raise MergeConflictError(
            f"Readings for {day_id} changed concurrently {self.max_retries} times; merge abandoned"
        )

    async def _load_day(self, day_id: str) -> DeviceDayReadings | None:
        query = (
            select(DeviceDayReadings)
            .where(DeviceDayReadings.id == day_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()
