"""Tests for building temperature settings."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import BUILDING
from thermotrack.models.temperature_settings import BuildingTemperatureSettings
from thermotrack.services.temperature_settings_service import (
    InvalidSettingsError,
    TemperatureSettingsService,
    resolve_ideal_range,
    snapshot_slots,
)
from thermotrack.services.temperature_time import InvalidTimezoneError


class TestTemperatureSettingsService:
    """Tests for TemperatureSettingsService."""

    @pytest.mark.asyncio
    async def test_defaults_not_persisted_without_create(self, db_session: AsyncSession):
        service = TemperatureSettingsService(db_session)

        row = await service.get_settings(BUILDING)

        assert row.timezone == "America/Chicago"
        assert [slot.minutes for slot in snapshot_slots(row)] == [510, 990]
        assert await db_session.get(BuildingTemperatureSettings, BUILDING) is None

    @pytest.mark.asyncio
    async def test_create_keeps_slot_ids_stable(self, db_session: AsyncSession):
        service = TemperatureSettingsService(db_session)

        first = await service.get_settings(BUILDING, create=True)
        ids = [slot["id"] for slot in first.snapshot_times]
        second = await service.get_settings(BUILDING, create=True)

        assert [slot["id"] for slot in second.snapshot_times] == ids

    @pytest.mark.asyncio
    async def test_update_settings(self, db_session: AsyncSession):
        service = TemperatureSettingsService(db_session)

        row = await service.update_settings(
            BUILDING,
            building_name="Science Building",
            timezone="America/New_York",
            snapshot_times=[
                {"id": "pm", "minutes": 900, "label": "Afternoon"},
                {"minutes": 420, "tolerance_minutes": 5},
            ],
            ideal_temp_f_min=68,
            ideal_temp_f_max=74,
            ideal_ranges_by_space_type={"Lab": {"min_f": 65, "max_f": 70}, "Broken": {"min_f": 80, "max_f": 70}},
        )

        assert row.building_name == "Science Building"
        assert row.timezone == "America/New_York"
        slots = snapshot_slots(row)
        assert [slot.minutes for slot in slots] == [420, 900]
        assert slots[0].tolerance_minutes == 5
        assert slots[0].id
        assert slots[1].tolerance_minutes == 15
        assert slots[1].display_label == "Afternoon"
        assert resolve_ideal_range(row) == {"min_f": 68.0, "max_f": 74.0}
        assert resolve_ideal_range(row, "Lab") == {"min_f": 65.0, "max_f": 70.0}
        assert resolve_ideal_range(row, "Broken") == {"min_f": 68.0, "max_f": 74.0}

    @pytest.mark.asyncio
    async def test_ideal_range_is_replaced(self, db_session: AsyncSession):
        service = TemperatureSettingsService(db_session)
        await service.update_settings(BUILDING, ideal_temp_f_min=68, ideal_temp_f_max=74)

        row = await service.update_settings(BUILDING, timezone="UTC")

        assert row.ideal_temp_f_min is None
        assert resolve_ideal_range(row) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs,error",
        [
            ({"timezone": "Not/AZone"}, InvalidTimezoneError),
            ({"snapshot_times": [{"minutes": 1440}]}, InvalidSettingsError),
            ({"snapshot_times": [{"minutes": 60, "tolerance_minutes": -1}]}, InvalidSettingsError),
            ({"snapshot_times": [{"id": "a", "minutes": 60}, {"id": "a", "minutes": 90}]}, InvalidSettingsError),
            ({"ideal_temp_f_min": 80, "ideal_temp_f_max": 70}, InvalidSettingsError),
        ],
    )
    async def test_validation(self, db_session: AsyncSession, kwargs, error):
        service = TemperatureSettingsService(db_session)
        with pytest.raises(error):
            await service.update_settings(BUILDING, **kwargs)
