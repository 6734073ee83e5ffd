"""Tests for aggregation, granularity and downsampling."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import BUILDING
from thermotrack.models.temperature_snapshot import RoomAggregate
from thermotrack.services.temperature_aggregation import (
    AggregateService,
    RoomDay,
    SeriesPoint,
    TemperatureGranularity,
    build_aggregate_series,
    build_hourly_aggregates,
    downsample_points,
    get_temperature_status,
    merge_room_samples,
    normalize_ideal_range,
    resolve_granularity,
)
from thermotrack.services.temperature_matcher import to_aggregate_id

TZ = "America/Chicago"


def sample(temp_f: float) -> dict:
    return {"temperature_f": temp_f, "temperature_c": (temp_f - 32) * 5 / 9, "humidity": None}


SAMPLES = {"0": sample(60.0), "30": sample(70.0), "90": sample(80.0)}


class TestBuildHourlyAggregates:
    """Tests for bucket folding."""

    def test_buckets(self):
        aggregates = build_hourly_aggregates(SAMPLES)

        assert len(aggregates.hourly) == 24
        first = aggregates.hourly[0]
        assert first["count"] == 2
        assert first["min_f"] == 60.0
        assert first["max_f"] == 70.0
        assert first["avg_f"] == 65.0
        assert aggregates.hourly[1]["count"] == 1
        assert aggregates.hourly[1]["avg_f"] == 80.0
        assert all(bucket is None for bucket in aggregates.hourly[2:])
        assert aggregates.daily["count"] == 3
        assert aggregates.daily["avg_f"] == 70.0
        assert aggregates.sample_count == 3

    def test_ignores_bad_minutes_and_values(self):
        samples = {"abc": sample(50.0), "1440": sample(50.0), "60": {"temperature_f": None}}
        aggregates = build_hourly_aggregates(samples)
        assert aggregates.daily is None
        assert aggregates.sample_count == 0

    def test_empty_day(self):
        aggregates = build_hourly_aggregates({})
        assert aggregates.hourly == [None] * 24
        assert aggregates.daily is None


class TestMergeRoomSamples:
    """Tests for folding several devices into one room day."""

    def test_lowest_device_id_wins_shared_minute(self):
        merged = merge_room_samples([
            ("bsb__sensor_b", "Sensor B", {"30": sample(75.0), "90": sample(80.0)}),
            ("bsb__sensor_a", "Sensor A", {"0": sample(60.0), "30": sample(70.0)}),
        ])

        assert sorted(merged, key=int) == ["0", "30", "90"]
        assert merged["30"]["temperature_f"] == 70.0
        assert merged["30"]["device_id"] == "bsb__sensor_a"
        assert merged["90"]["device_label"] == "Sensor B"

    def test_order_does_not_matter(self):
        days = [
            ("bsb__sensor_a", "Sensor A", {"30": sample(70.0)}),
            ("bsb__sensor_b", "Sensor B", {"30": sample(75.0)}),
        ]
        assert merge_room_samples(days) == merge_room_samples(list(reversed(days)))


class TestResolveGranularity:
    """Tests for span-based granularity selection."""

    START = datetime(2024, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "span,expected",
        [
            (timedelta(hours=48), TemperatureGranularity.RAW),
            (timedelta(hours=49), TemperatureGranularity.HOURLY),
            (timedelta(days=45), TemperatureGranularity.HOURLY),
            (timedelta(days=46), TemperatureGranularity.DAILY),
        ],
    )
    def test_auto(self, span, expected):
        assert resolve_granularity(self.START, self.START + span) == expected

    def test_forced(self):
        assert resolve_granularity(self.START, self.START, "daily") == TemperatureGranularity.DAILY

    def test_open_range_is_hourly(self):
        assert resolve_granularity(None, None) == TemperatureGranularity.HOURLY


class TestDownsample:
    """Tests for downsample_points."""

    def test_bound_and_position(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        points = [
            SeriesPoint(timestamp=start + timedelta(minutes=i), value=float(i))
            for i in range(10_000)
        ]

        result = downsample_points(points, 1400)

        assert len(result) <= 1400
        assert result[0].timestamp - points[0].timestamp <= timedelta(minutes=8)
        assert points[-1].timestamp - result[-1].timestamp <= timedelta(minutes=8)
        assert [p.timestamp for p in result] == sorted(p.timestamp for p in result)

    def test_bucket_average(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        points = [SeriesPoint(timestamp=start + timedelta(hours=i), value=v) for i, v in enumerate([1, 2, 3, 4])]

        result = downsample_points(points, 2)

        assert [p.value for p in result] == [1.5, 3.5]
        assert result[0].timestamp == points[1].timestamp

    def test_short_series_untouched(self):
        points = [SeriesPoint(timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc), value=1.0)]
        assert downsample_points(points, 1400) == points


class TestAggregateSeries:
    """Tests for expanding stored aggregates into series."""

    def make_doc(self) -> RoomAggregate:
        aggregates = build_hourly_aggregates(SAMPLES)
        return RoomAggregate(
            id="x",
            building_code=BUILDING,
            room_key="bsb_101",
            room_name="Stored Name",
            date_local="2024-01-15",
            timezone=TZ,
            hourly=aggregates.hourly,
            daily=aggregates.daily,
            sample_count=aggregates.sample_count,
        )

    def test_hourly_points_at_local_hours(self):
        series = build_aggregate_series([self.make_doc()], TemperatureGranularity.HOURLY, TZ)

        assert len(series) == 1
        assert series[0].room_name == "Stored Name"
        points = series[0].points
        assert [p.timestamp for p in points] == [
            datetime(2024, 1, 15, 6, tzinfo=timezone.utc),
            datetime(2024, 1, 15, 7, tzinfo=timezone.utc),
        ]
        assert points[0].value == 65.0
        assert points[0].count == 2

    def test_daily_point_at_local_noon_in_celsius(self):
        series = build_aggregate_series(
            [self.make_doc()],
            TemperatureGranularity.DAILY,
            TZ,
            unit="C",
            room_names={"bsb_101": "Science Building 101"},
        )

        point = series[0].points[0]
        assert series[0].room_name == "Science Building 101"
        assert point.timestamp == datetime(2024, 1, 15, 18, tzinfo=timezone.utc)
        assert point.value == pytest.approx((70.0 - 32) * 5 / 9)


class TestIdealRange:
    """Tests for ideal range classification."""

    def test_normalize(self):
        assert normalize_ideal_range(None, None) is None
        assert normalize_ideal_range(75, 68) is None
        assert normalize_ideal_range(68, None) == {"min_f": 68.0, "max_f": None}

    @pytest.mark.parametrize(
        "value,expected",
        [(66.0, "below"), (68.0, "ok"), (74.0, "ok"), (74.5, "above"), (None, "unknown")],
    )
    def test_status(self, value, expected):
        assert get_temperature_status(value, {"min_f": 68.0, "max_f": 74.0}) == expected

    def test_status_without_range(self):
        assert get_temperature_status(70.0, None) == "unknown"


class TestAggregateService:
    """Tests for AggregateService."""

    def make_day(self, samples: dict) -> RoomDay:
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

    @pytest.mark.asyncio
    async def test_writes_once_for_unchanged_day(self, db_session: AsyncSession):
        service = AggregateService(db_session)

        assert await service.recompute_for_day(self.make_day(SAMPLES)) is True
        await db_session.commit()
        assert await service.recompute_for_day(self.make_day(SAMPLES)) is False

        doc = await db_session.get(RoomAggregate, to_aggregate_id(BUILDING, "bsb_101", "2024-01-15"))
        assert doc.sample_count == 3
        assert doc.daily["avg_f"] == 70.0

    @pytest.mark.asyncio
    async def test_rebuilds_from_full_day(self, db_session: AsyncSession):
        service = AggregateService(db_session)
        await service.recompute_for_day(self.make_day(SAMPLES))
        await db_session.commit()

        assert await service.recompute_for_day(self.make_day({**SAMPLES, "600": sample(90.0)})) is True
        await db_session.commit()

        doc = await db_session.get(RoomAggregate, to_aggregate_id(BUILDING, "bsb_101", "2024-01-15"))
        assert doc.sample_count == 4
        assert doc.hourly[10]["avg_f"] == 90.0
