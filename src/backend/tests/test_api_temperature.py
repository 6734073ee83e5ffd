"""Tests for temperature API endpoints."""

import json

import pytest
from httpx import AsyncClient

from conftest import BUILDING, make_csv

BASE = "/api/v1/temperature"


def morning_rows(base: float = 70.0):
    rows = [(f"2024-01-15 08:{minute:02d}:00", base, 40.0) for minute in range(25, 36)]
    rows.append(("2024-01-15 16:30:00", base + 4, 38.0))
    return rows


def csv_files(*names_and_bases):
    return [
        ("files", (name, make_csv(morning_rows(base)), "text/csv"))
        for name, base in names_and_bases
    ]


class TestTemperatureAPI:
    """Tests for temperature API endpoints."""

    async def import_room_101(self, client: AsyncClient) -> dict:
        response = await client.post(
            f"{BASE}/buildings/{BUILDING}/imports",
            files=csv_files(("Room 101.csv", 70.0)),
        )
        assert response.status_code == 201
        return response.json()

    # ==================== Settings ====================

    @pytest.mark.asyncio
    async def test_get_default_settings(self, client: AsyncClient):
        response = await client.get(f"{BASE}/buildings/{BUILDING}/settings")

        assert response.status_code == 200
        data = response.json()
        assert data["timezone"] == "America/Chicago"
        assert [slot["minutes"] for slot in data["snapshot_times"]] == [510, 990]

    @pytest.mark.asyncio
    async def test_update_settings(self, client: AsyncClient):
        response = await client.put(
            f"{BASE}/buildings/{BUILDING}/settings",
            json={
                "timezone": "America/Denver",
                "snapshot_times": [{"id": "noon", "minutes": 720, "label": "Noon"}],
                "ideal_temp_f_min": 68,
                "ideal_temp_f_max": 74,
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["timezone"] == "America/Denver"
        assert data["snapshot_times"] == [
            {"id": "noon", "label": "Noon", "minutes": 720, "tolerance_minutes": 15}
        ]
        assert data["ideal_temp_f_min"] == 68.0

    @pytest.mark.asyncio
    async def test_update_settings_invalid_timezone(self, client: AsyncClient):
        response = await client.put(f"{BASE}/buildings/{BUILDING}/settings", json={"timezone": "Mars/Base"})
        assert response.status_code == 422

    # ==================== Imports ====================

    @pytest.mark.asyncio
    async def test_preview(self, client: AsyncClient):
        response = await client.post(
            f"{BASE}/buildings/{BUILDING}/imports/preview",
            files=csv_files(("Room 101.csv", 70.0), ("Hallway.csv", 65.0)),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["summary"]["file_count"] == 2
        assert data["summary"]["ready_count"] == 2
        first, second = data["items"]
        assert first["suggested_room_key"] == "bsb_101"
        assert first["suggested_room_name"] == "Science Building 101"
        assert first["needs_review"] is False
        assert second["suggested_room_key"] == ""
        assert second["needs_review"] is True
        assert "samples" not in first

    @pytest.mark.asyncio
    async def test_import_and_job(self, client: AsyncClient):
        outcome = await self.import_room_101(client)

        assert outcome["status"] == "completed"
        assert outcome["new_readings"] == 12

        response = await client.get(f"{BASE}/imports/jobs/{outcome['job_id']}")
        assert response.status_code == 200
        job = response.json()
        assert job["status"] == "completed"
        assert job["progress_percent"] == 100
        assert job["elapsed"].endswith("s")

    @pytest.mark.asyncio
    async def test_import_requires_mapping(self, client: AsyncClient):
        response = await client.post(
            f"{BASE}/buildings/{BUILDING}/imports",
            files=csv_files(("Hallway.csv", 65.0)),
        )

        assert response.status_code == 409
        assert response.json()["detail"]["device_labels"] == ["Hallway"]

    @pytest.mark.asyncio
    async def test_import_with_override(self, client: AsyncClient):
        response = await client.post(
            f"{BASE}/buildings/{BUILDING}/imports",
            files=csv_files(("Hallway.csv", 65.0)),
            data={"mapping_overrides": json.dumps({"bsb__hallway": "bsb_205a"})},
        )

        assert response.status_code == 201
        assert response.json()["new_readings"] == 12

    @pytest.mark.asyncio
    async def test_import_bad_overrides(self, client: AsyncClient):
        response = await client.post(
            f"{BASE}/buildings/{BUILDING}/imports",
            files=csv_files(("Hallway.csv", 65.0)),
            data={"mapping_overrides": "[1, 2]"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_duplicate_import(self, client: AsyncClient):
        await self.import_room_101(client)

        response = await client.post(
            f"{BASE}/buildings/{BUILDING}/imports",
            files=csv_files(("Room 101 copy.csv", 70.0)),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "duplicate"
        assert data["job_id"] is None
        assert data["duplicates"] == 1
        assert data["new_readings"] == 0

    @pytest.mark.asyncio
    async def test_nothing_to_import(self, client: AsyncClient):
        response = await client.post(
            f"{BASE}/buildings/{BUILDING}/imports",
            files=[("files", ("Room 101.csv", make_csv([]), "text/csv"))],
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_job_not_found(self, client: AsyncClient):
        response = await client.get(f"{BASE}/imports/jobs/missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_history_and_delete(self, client: AsyncClient):
        await self.import_room_101(client)

        response = await client.get(f"{BASE}/buildings/{BUILDING}/imports")
        assert response.status_code == 200
        records = response.json()
        assert len(records) == 1
        assert records[0]["room_key"] == "bsb_101"

        response = await client.delete(f"{BASE}/imports/{records[0]['id']}")
        assert response.status_code == 204

        response = await client.delete(f"{BASE}/imports/{records[0]['id']}")
        assert response.status_code == 404

    # ==================== Devices & recompute ====================

    @pytest.mark.asyncio
    async def test_update_device_mapping(self, client: AsyncClient):
        await self.import_room_101(client)

        response = await client.put(f"{BASE}/devices/bsb__room_101/mapping", json={"room_key": "bsb_102"})

        assert response.status_code == 200
        data = response.json()
        assert data["room_key"] == "bsb_102"
        assert data["mapping_manual"] is True

        response = await client.put(f"{BASE}/devices/bsb__room_101/mapping", json={"room_key": "nowhere"})
        assert response.status_code == 422

        response = await client.put(f"{BASE}/devices/missing/mapping", json={"room_key": "bsb_102"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_recompute(self, client: AsyncClient):
        await self.import_room_101(client)

        response = await client.post(
            f"{BASE}/buildings/{BUILDING}/recompute",
            json={"start_date": "2024-01-15", "end_date": "2024-01-15"},
        )

        assert response.status_code == 200
        assert response.json() == {"days": 1, "snapshot_writes": 0, "aggregate_writes": 0}

        response = await client.post(
            f"{BASE}/buildings/{BUILDING}/recompute",
            json={"start_date": "2024-01-16", "end_date": "2024-01-15"},
        )
        assert response.status_code == 422

    # ==================== Queries ====================

    @pytest.mark.asyncio
    async def test_series(self, client: AsyncClient):
        await self.import_room_101(client)

        response = await client.get(
            f"{BASE}/buildings/{BUILDING}/series",
            params={"room_keys": "bsb_101", "start": "2024-01-15T14:00:00Z", "end": "2024-01-15T15:00:00Z"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["granularity"] == "raw"
        assert data["series"][0]["room_name"] == "Science Building 101"
        assert len(data["series"][0]["points"]) == 11

    @pytest.mark.asyncio
    async def test_series_rejects_inverted_range(self, client: AsyncClient):
        response = await client.get(
            f"{BASE}/buildings/{BUILDING}/series",
            params={"start": "2024-01-16T00:00:00Z", "end": "2024-01-15T00:00:00Z"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_snapshots_with_ideal_status(self, client: AsyncClient):
        await client.put(
            f"{BASE}/buildings/{BUILDING}/settings",
            json={"ideal_temp_f_min": 72, "ideal_temp_f_max": 76},
        )
        await self.import_room_101(client)

        response = await client.get(f"{BASE}/buildings/{BUILDING}/snapshots", params={"date": "2024-01-15"})

        assert response.status_code == 200
        snapshots = response.json()
        assert [s["target_minutes"] for s in snapshots] == [510, 990]
        assert [s["temperature_status"] for s in snapshots] == ["below", "ok"]

    @pytest.mark.asyncio
    async def test_exports(self, client: AsyncClient):
        await self.import_room_101(client)
        params = {"start_date": "2024-01-15", "end_date": "2024-01-15"}

        response = await client.get(f"{BASE}/buildings/{BUILDING}/exports/snapshots.csv", params=params)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        assert response.text.startswith("Building,Room,Date,Snapshot Time")

        response = await client.get(f"{BASE}/buildings/{BUILDING}/exports/raw.csv", params=params)
        assert response.status_code == 200
        assert len(response.text.strip().splitlines()) == 13

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
