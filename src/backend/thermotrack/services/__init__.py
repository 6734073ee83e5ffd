"""Thermotrack Services Module."""

from thermotrack.services.temperature_time import (
    TemperatureError,
    InvalidTimezoneError,
    InvalidDateRangeError,
)
from thermotrack.services.room_resolver import Room, RoomResolver, RoomDirectoryError
from thermotrack.services.temperature_csv import UploadedFile, ParsedCsvFile, parse_csv_file
from thermotrack.services.temperature_merge import TemperatureMergeService, MergeConflictError
from thermotrack.services.temperature_snapshots import SnapshotService, SnapshotSlot
from thermotrack.services.temperature_aggregation import AggregateService, TemperatureGranularity
from thermotrack.services.temperature_import_jobs import ImportJobTracker, ImportJobError
from thermotrack.services.temperature_settings_service import (
    TemperatureSettingsService,
    InvalidSettingsError,
)
from thermotrack.services.temperature_query_service import TemperatureQueryService
from thermotrack.services.temperature_import_service import (
    TemperatureImportService,
    MappingRequiredError,
    NothingToImportError,
    UnknownRoomError,
    DeviceNotFoundError,
    ImportRecordNotFoundError,
)
from thermotrack.services.temperature_export import TemperatureExportService

__all__ = [
    "TemperatureError",
    "InvalidTimezoneError",
    "InvalidDateRangeError",
    "Room",
    "RoomResolver",
    "RoomDirectoryError",
    "UploadedFile",
    "ParsedCsvFile",
    "parse_csv_file",
    "TemperatureMergeService",
    "MergeConflictError",
    "SnapshotService",
    "SnapshotSlot",
    "AggregateService",
    "TemperatureGranularity",
    "ImportJobTracker",
    "ImportJobError",
    "TemperatureSettingsService",
    "InvalidSettingsError",
    "TemperatureQueryService",
    "TemperatureImportService",
    "MappingRequiredError",
    "NothingToImportError",
    "UnknownRoomError",
    "DeviceNotFoundError",
    "ImportRecordNotFoundError",
    "TemperatureExportService",
]
