"""Thermotrack Database Models."""

from thermotrack.models.base import Base, TimestampMixin
from thermotrack.models.temperature_settings import BuildingTemperatureSettings
from thermotrack.models.temperature_device import TemperatureDevice, MappingMethod
from thermotrack.models.temperature_reading import DeviceDayReadings
from thermotrack.models.temperature_snapshot import RoomSnapshot, RoomAggregate, SnapshotStatus
from thermotrack.models.temperature_import import (
    TemperatureImport,
    TemperatureImportJob,
    ImportJobStatus,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "BuildingTemperatureSettings",
    "TemperatureDevice",
    "MappingMethod",
    "DeviceDayReadings",
    "RoomSnapshot",
    "RoomAggregate",
    "SnapshotStatus",
    "TemperatureImport",
    "TemperatureImportJob",
    "ImportJobStatus",
]
