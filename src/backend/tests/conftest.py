"""Pytest configuration and fixtures for Thermotrack tests."""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from thermotrack.main import app
from thermotrack.models.base import Base
# Import all models to ensure they're registered with Base.metadata
from thermotrack.models import (  # noqa: F401
    BuildingTemperatureSettings,
    TemperatureDevice,
    DeviceDayReadings,
    RoomSnapshot,
    RoomAggregate,
    TemperatureImport,
    TemperatureImportJob,
)
from thermotrack.core.deps import get_db, get_room_resolver
from thermotrack.services.room_resolver import RoomResolver
from thermotrack.services.temperature_csv import UploadedFile

# Test database URL (use SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

BUILDING = "BSB"

CSV_HEADER = "Timestamp,Temperature (°F),Relative Humidity (%)\n"


def make_csv(rows: list[tuple[str, float, float | None]], header: str = CSV_HEADER) -> bytes:
    """Build an export file from (timestamp, temperature, humidity) rows."""
    lines = [header]
    for timestamp, temperature, humidity in rows:
        lines.append(f"{timestamp},{temperature},{'' if humidity is None else humidity}\n")
    return "".join(lines).encode("utf-8")


def make_upload(name: str, rows: list[tuple[str, float, float | None]]) -> UploadedFile:
    return UploadedFile(name=name, content=make_csv(rows))


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine with shared connection."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session


@pytest.fixture
def rooms() -> RoomResolver:
    """Small room directory for one building."""
    return RoomResolver.from_records([
        {"key": "bsb_101", "building_code": BUILDING, "building_name": "Science Building",
         "room_number": "101", "name": "Science Building 101", "space_type": "Classroom"},
        {"key": "bsb_102", "building_code": BUILDING, "building_name": "Science Building",
         "room_number": "102", "name": "Science Building 102", "space_type": "Office"},
        {"key": "bsb_205a", "building_code": BUILDING, "building_name": "Science Building",
         "room_number": "205A", "name": "Science Building 205A", "space_type": "Lab"},
    ])


@pytest_asyncio.fixture(scope="function")
async def client(db_engine, rooms: RoomResolver) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with database and room directory overrides."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with async_session() as session:
            yield session

    async def override_get_room_resolver() -> RoomResolver:
        return rooms

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_room_resolver] = override_get_room_resolver

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
