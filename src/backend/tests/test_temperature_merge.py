"""Tests for the sample merge engine."""

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from conftest import BUILDING, make_csv
from thermotrack.models.temperature_device import TemperatureDevice
from thermotrack.models.temperature_reading import DeviceDayReadings
from thermotrack.services.temperature_csv import parse_csv_file
from thermotrack.services.temperature_merge import (
    DeviceBatch,
    MergeConflictError,
    MergeResult,
    TemperatureMergeService,
    apply_watermarks,
    group_samples_by_date,
)

TZ = "America/Chicago"


def samples_for(rows):
    return parse_csv_file("Room 101.csv", make_csv(rows)).samples


def make_batch() -> DeviceBatch:
    return DeviceBatch(
        building_code=BUILDING,
        building_name="Science Building",
        device_id="bsb__room_101",
        device_label="Room 101",
        timezone=TZ,
    )


ROWS = [
    ("2024-01-15 08:30:00", 72.0, 40.0),
    ("2024-01-15 08:31:00", 72.5, 40.0),
    ("2024-01-16 00:05:00", 68.0, None),
]


class TestGrouping:
    """Tests for grouping samples by local date."""

    def test_groups_by_date_and_minute(self):
        result = MergeResult()
        by_date = group_samples_by_date(samples_for(ROWS), TZ, result)

        assert sorted(by_date) == ["2024-01-15", "2024-01-16"]
        assert sorted(by_date["2024-01-15"], key=int) == ["510", "511"]
        entry = by_date["2024-01-15"]["510"]
        assert entry["temperature_f"] == 72.0
        assert entry["local_timestamp"] == "2024-01-15 08:30:00"
        assert entry["utc"] == "2024-01-15T14:30:00+00:00"

        assert result.earliest_local == "2024-01-15 08:30:00"
        assert result.latest_local == "2024-01-16 00:05:00"
        assert result.earliest_utc == datetime(2024, 1, 15, 14, 30, tzinfo=timezone.utc)

    def test_later_sample_wins_within_batch(self):
        rows = [("2024-01-15 08:30:00", 70.0, None), ("2024-01-15 08:30:30", 71.0, None)]
        by_date = group_samples_by_date(samples_for(rows), TZ, MergeResult())
        assert by_date["2024-01-15"]["510"]["temperature_f"] == 71.0

    def test_apply_watermarks_only_extends(self):
        device = TemperatureDevice(
            id="d",
            earliest_local_timestamp="2024-01-10 00:00:00",
            latest_local_timestamp="2024-01-20 00:00:00",
        )
        result = MergeResult(earliest_local="2024-01-15 08:30:00", latest_local="2024-01-16 00:05:00")
        assert apply_watermarks(device, result) is False

        result.latest_local = "2024-01-21 00:00:00"
        assert apply_watermarks(device, result) is True
        assert device.latest_local_timestamp == "2024-01-21 00:00:00"
        assert device.earliest_local_timestamp == "2024-01-10 00:00:00"


class TestTemperatureMergeService:
    """Tests for TemperatureMergeService."""

    @pytest.mark.asyncio
    async def test_merge_creates_day_rows(self, db_session: AsyncSession):
        service = TemperatureMergeService(db_session)
        progress = []

        async def on_progress(rows: int) -> None:
            progress.append(rows)

        result = await service.merge_device_samples(make_batch(), samples_for(ROWS), on_progress=on_progress)

        assert result.new_readings == 3
        assert result.conflicts == 0
        assert sorted(result.updated_days) == ["2024-01-15", "2024-01-16"]
        assert progress == [2, 1]

        day = await db_session.get(DeviceDayReadings, "bsb__room_101__2024-01-15")
        assert day.sample_count == 2
        assert day.timezone == TZ
        assert day.version == 1
        assert day.samples["511"]["temperature_f"] == 72.5

    @pytest.mark.asyncio
    async def test_progress_counts_repeated_minutes(self, db_session: AsyncSession):
        service = TemperatureMergeService(db_session)
        rows = [
            ("2024-01-15 08:30:00", 70.0, None),
            ("2024-01-15 08:30:30", 71.0, None),
            ("2024-01-15 08:31:00", 71.5, None),
        ]
        progress = []

        async def on_progress(rows: int) -> None:
            progress.append(rows)

        result = await service.merge_device_samples(make_batch(), samples_for(rows), on_progress=on_progress)

        assert result.new_readings == 2
        assert progress == [3]

    @pytest.mark.asyncio
    async def test_same_file_twice_is_idempotent(self, db_session: AsyncSession):
        service = TemperatureMergeService(db_session)
        await service.merge_device_samples(make_batch(), samples_for(ROWS))

        again = await service.merge_device_samples(make_batch(), samples_for(ROWS))

        assert again.new_readings == 0
        assert again.conflicts == 0
        assert again.updated_days == {}
        day = await db_session.get(DeviceDayReadings, "bsb__room_101__2024-01-15")
        assert day.version == 1

    @pytest.mark.asyncio
    async def test_differing_values_are_conflicts(self, db_session: AsyncSession):
        service = TemperatureMergeService(db_session)
        await service.merge_device_samples(make_batch(), samples_for(ROWS))

        changed = [(ts, temp + 1, hum) for ts, temp, hum in ROWS[:2]]
        result = await service.merge_device_samples(make_batch(), samples_for(changed))

        assert result.new_readings == 0
        assert result.conflicts == 2
        day = await db_session.get(DeviceDayReadings, "bsb__room_101__2024-01-15", populate_existing=True)
        assert day.samples["510"]["temperature_f"] == 72.0

    @pytest.mark.asyncio
    async def test_partial_overlap_adds_only_new_minutes(self, db_session: AsyncSession):
        service = TemperatureMergeService(db_session)
        await service.merge_device_samples(make_batch(), samples_for(ROWS[:1]))

        result = await service.merge_device_samples(make_batch(), samples_for(ROWS[:2]))

        assert result.new_readings == 1
        assert result.conflicts == 0
        assert sorted(result.updated_days["2024-01-15"], key=int) == ["510", "511"]
        day = await db_session.get(DeviceDayReadings, "bsb__room_101__2024-01-15", populate_existing=True)
        assert day.sample_count == 2
        assert day.version == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, db_session: AsyncSession, monkeypatch):
        service = TemperatureMergeService(db_session, max_retries=2)
        attempts = []

        async def stale_commit():
            attempts.append(1)
            raise StaleDataError("row changed")

        monkeypatch.setattr(db_session, "commit", stale_commit)

        with pytest.raises(MergeConflictError):
            await service.merge_device_samples(make_batch(), samples_for(ROWS[:1]))
        assert len(attempts) == 2
