"""Tests for the snapshot computer."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import BUILDING
from thermotrack.models.temperature_snapshot import RoomSnapshot
from thermotrack.services.temperature_aggregation import RoomDay
from thermotrack.services.temperature_snapshots import (
    SnapshotService,
    SnapshotSlot,
    compute_snapshot_values,
    default_snapshot_times,
    select_snapshot_sample,
)

TZ = "America/Chicago"


def sample(minute: int, temp_f: float, date_local: str = "2024-01-15") -> dict:
    hours, mins = divmod(minute, 60)
    return {
        "temperature_f": temp_f,
        "temperature_c": (temp_f - 32) * 5 / 9,
        "humidity": 40.0,
        "local_timestamp": f"{date_local} {hours:02d}:{mins:02d}:00",
        "utc": None,
    }


SAMPLES = {"800": sample(800, 70.0), "830": sample(830, 72.0)}


def make_day(samples: dict) -> RoomDay:
    return RoomDay(
        building_code=BUILDING,
        building_name="Science Building",
        room_key="bsb_101",
        room_name="Science Building 101",
        date_local="2024-01-15",
        timezone=TZ,
        device_id="bsb__room_101",
        device_label="Room 101",
        samples=samples,
    )


class TestSelectSnapshotSample:
    """Tests for closest-sample selection."""

    def test_exact_hit(self):
        found, delta = select_snapshot_sample(SAMPLES, 830, 15)
        assert found["temperature_f"] == 72.0
        assert delta == 0

    def test_hit_at_tolerance_edge(self):
        found, delta = select_snapshot_sample(SAMPLES, 845, 15)
        assert found["temperature_f"] == 72.0
        assert delta == 15

    def test_nothing_in_range(self):
        assert select_snapshot_sample(SAMPLES, 900, 5) == (None, None)

    def test_earlier_minute_wins_ties(self):
        samples = {"810": sample(810, 60.0), "820": sample(820, 80.0)}
        found, delta = select_snapshot_sample(samples, 815, 15)
        assert found["temperature_f"] == 60.0
        assert delta == 5

    def test_probes_stay_within_the_day(self):
        samples = {"1439": sample(1439, 65.0)}
        found, delta = select_snapshot_sample(samples, 5, 15)
        assert found is None


class TestComputeSnapshotValues:
    """Tests for snapshot values."""

    def test_ok_snapshot(self):
        slot = SnapshotSlot(id="am", minutes=830, tolerance_minutes=15)
        values = compute_snapshot_values(make_day(SAMPLES), slot)

        assert values["status"] == "ok"
        assert values["temperature_f"] == 72.0
        assert values["delta_minutes"] == 0
        assert values["source_device_id"] == "bsb__room_101"
        assert values["source_reading_local"] == "2024-01-15 13:50:00"
        assert values["source_reading_utc"] == datetime(2024, 1, 15, 19, 50, tzinfo=timezone.utc)

    def test_missing_snapshot(self):
        slot = SnapshotSlot(id="late", minutes=900, tolerance_minutes=5)
        values = compute_snapshot_values(make_day(SAMPLES), slot)
        assert values["status"] == "missing"
        assert values["temperature_f"] is None
        assert values["source_reading_utc"] is None

    def test_slot_labels(self):
        assert SnapshotSlot(id="a", minutes=510).display_label == "8:30 AM"
        assert SnapshotSlot(id="a", minutes=990, label="Afternoon").display_label == "Afternoon"
        slots = default_snapshot_times()
        assert [s["minutes"] for s in slots] == [510, 990]
        assert all(s["tolerance_minutes"] == 15 for s in slots)
        assert slots[0]["id"] != slots[1]["id"]


class TestSnapshotService:
    """Tests for SnapshotService."""

    SLOTS = [
        SnapshotSlot(id="am", minutes=830, tolerance_minutes=15),
        SnapshotSlot(id="late", minutes=900, tolerance_minutes=5),
    ]

    @pytest.mark.asyncio
    async def test_writes_then_skips_unchanged(self, db_session: AsyncSession):
        service = SnapshotService(db_session)

        first = await service.recompute_for_day(make_day(SAMPLES), self.SLOTS)
        await db_session.commit()
        second = await service.recompute_for_day(make_day(SAMPLES), self.SLOTS)

        assert first == 2
        assert second == 0

        result = await db_session.execute(select(RoomSnapshot).order_by(RoomSnapshot.target_minutes))
        snapshots = result.scalars().all()
        assert [s.status for s in snapshots] == ["ok", "missing"]
        assert snapshots[0].snapshot_label == "1:50 PM"
        assert snapshots[0].room_name == "Science Building 101"

    @pytest.mark.asyncio
    async def test_new_sample_fills_missing_slot(self, db_session: AsyncSession):
        service = SnapshotService(db_session)
        await service.recompute_for_day(make_day(SAMPLES), self.SLOTS)
        await db_session.commit()

        updated = {**SAMPLES, "902": sample(902, 74.0)}
        writes = await service.recompute_for_day(make_day(updated), self.SLOTS)
        await db_session.commit()

        assert writes == 1
        result = await db_session.execute(select(RoomSnapshot).where(RoomSnapshot.snapshot_time_id == "late"))
        late = result.scalar_one()
        assert late.status == "ok"
        assert late.temperature_f == 74.0
        assert late.delta_minutes == 2
