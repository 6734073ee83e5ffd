"""Temperature monitoring API endpoints."""

import json
from datetime import datetime
from typing import NoReturn

import structlog
from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy import select
from starlette import status as http_status

from thermotrack.core.deps import DbSession, Rooms
from thermotrack.models.temperature_snapshot import RoomSnapshot
from thermotrack.services.temperature_aggregation import get_temperature_status
from thermotrack.services.temperature_csv import UploadedFile
from thermotrack.services.temperature_export import TemperatureExportService
from thermotrack.services.temperature_import_jobs import (
    ImportJobError,
    ImportJobTracker,
    calculate_import_progress,
    format_elapsed,
)
from thermotrack.services.temperature_import_service import (
    DeviceNotFoundError,
    ImportRecordNotFoundError,
    MappingRequiredError,
    TemperatureImportService,
    UnknownRoomError,
)
from thermotrack.services.temperature_query_service import TemperatureQueryService
from thermotrack.services.temperature_settings_service import (
    InvalidSettingsError,
    TemperatureSettingsService,
    resolve_ideal_range,
)
from thermotrack.services.temperature_time import (
    InvalidDateRangeError,
    InvalidTimezoneError,
    TemperatureError,
    validate_date_range,
)

logger = structlog.get_logger()

router = APIRouter()


# ==================== Pydantic Schemas ====================

class SnapshotTimeSchema(BaseModel):
    """Configured snapshot slot."""

    id: str | None = None
    label: str = ""
    minutes: int = Field(..., ge=0, le=1439)
    tolerance_minutes: int | None = Field(default=None, ge=0)


class IdealRangeSchema(BaseModel):
    min_f: float | None = None
    max_f: float | None = None


class TemperatureSettingsResponse(BaseModel):
    """Building temperature settings."""

    building_code: str
    building_name: str
    timezone: str
    snapshot_times: list[SnapshotTimeSchema]
    ideal_temp_f_min: float | None = None
    ideal_temp_f_max: float | None = None
    ideal_ranges_by_space_type: dict[str, IdealRangeSchema] = Field(default_factory=dict)

    model_config = {"from_attributes": True}


class TemperatureSettingsUpdateRequest(BaseModel):
    building_name: str | None = None
    timezone: str | None = None
    snapshot_times: list[SnapshotTimeSchema] | None = None
    ideal_temp_f_min: float | None = None
    ideal_temp_f_max: float | None = None
    ideal_ranges_by_space_type: dict[str, IdealRangeSchema] | None = None


class ImportItemResponse(BaseModel):
    """Preview of one uploaded file."""

    file_name: str
    file_hash: str
    status: str
    device_id: str
    device_label: str
    temperature_unit: str
    row_count: int
    parsed_count: int
    error_count: int
    errors: list[str]
    min_timestamp: str
    max_timestamp: str
    duplicate: bool
    suggested_room_key: str
    suggested_room_name: str
    match_confidence: float
    match_method: str
    needs_review: bool


class ImportSummaryResponse(BaseModel):
    file_count: int
    device_count: int
    total_rows: int
    parsed_rows: int
    duplicate_count: int
    error_count: int
    ready_count: int


class ImportPreviewResponse(BaseModel):
    items: list[ImportItemResponse]
    summary: ImportSummaryResponse


class ImportRunResponse(BaseModel):
    """Result of an import run."""

    job_id: str | None = None
    status: str
    new_readings: int
    conflicts: int
    files_imported: int
    duplicates: int = 0


class ImportJobResponse(BaseModel):
    """Import job progress."""

    id: str
    building_code: str
    status: str
    stage: str
    total_files: int
    processed_files: int
    total_rows: int
    processed_rows: int
    processed_readings: int
    conflict_count: int
    current_file: str | None = None
    error_summary: str | None = None
    error_details: list[str] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None
    progress_percent: int
    elapsed: str


class ImportRecordResponse(BaseModel):
    """Import history entry."""

    id: str
    building_code: str
    file_name: str
    file_hash: str
    device_id: str
    device_label: str
    room_key: str | None = None
    room_name: str | None = None
    mapping_method: str | None = None
    mapping_confidence: float | None = None
    mapping_manual: bool
    row_count: int
    parsed_count: int
    new_readings: int
    conflicts: int
    date_range_start: str | None = None
    date_range_end: str | None = None
    temperature_unit: str
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class DeviceMappingRequest(BaseModel):
    room_key: str = Field(..., min_length=1)


class DeviceResponse(BaseModel):
    """Temperature device with its mapping."""

    id: str
    building_code: str
    label: str
    room_key: str | None = None
    mapping_method: str
    mapping_confidence: float | None = None
    mapping_manual: bool
    earliest_local_timestamp: str | None = None
    latest_local_timestamp: str | None = None

    model_config = {"from_attributes": True}


class RecomputeRequest(BaseModel):
    start_date: str
    end_date: str


class RecomputeResponse(BaseModel):
    days: int
    snapshot_writes: int
    aggregate_writes: int


class SeriesPointResponse(BaseModel):
    timestamp: datetime
    value: float
    min: float | None = None
    max: float | None = None
    count: int


class RoomSeriesResponse(BaseModel):
    room_key: str
    room_name: str
    points: list[SeriesPointResponse]


class SeriesResponse(BaseModel):
    """Room time series."""

    building_code: str
    granularity: str
    unit: str
    series: list[RoomSeriesResponse]
    last_updated: datetime | None = None


class SnapshotResponse(BaseModel):
    """Room snapshot with its ideal-range status."""

    id: str
    room_key: str
    room_name: str
    date_local: str
    snapshot_time_id: str
    snapshot_label: str
    target_minutes: int
    tolerance_minutes: int
    timezone: str
    status: str
    temperature_f: float | None = None
    temperature_c: float | None = None
    humidity: float | None = None
    delta_minutes: int | None = None
    source_device_id: str | None = None
    source_device_label: str | None = None
    source_reading_local: str | None = None
    source_reading_utc: datetime | None = None
    temperature_status: str = "unknown"

    model_config = {"from_attributes": True}


# ==================== Helpers ====================

def _raise_http(e: TemperatureError) -> NoReturn:
    """Translate a service error into an HTTPException."""
    if isinstance(e, (InvalidTimezoneError, InvalidDateRangeError, InvalidSettingsError, UnknownRoomError)):
        code = http_status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(e, MappingRequiredError):
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT,
            detail={"message": str(e), "device_labels": e.device_labels},
        )
    elif isinstance(e, (DeviceNotFoundError, ImportRecordNotFoundError)):
        code = http_status.HTTP_404_NOT_FOUND
    else:
        # Empty import queue and anything unexpected
        code = http_status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=code, detail=str(e))


async def _read_uploads(files: list[UploadFile]) -> list[UploadedFile]:
    uploads = []
    for file in files:
        content = await file.read()
        uploads.append(UploadedFile(name=file.filename or "upload.csv", content=content))
    return uploads


def _settings_response(row) -> TemperatureSettingsResponse:
    return TemperatureSettingsResponse(
        building_code=row.building_code,
        building_name=row.building_name,
        timezone=row.timezone,
        snapshot_times=[SnapshotTimeSchema(**slot) for slot in row.snapshot_times or []],
        ideal_temp_f_min=row.ideal_temp_f_min,
        ideal_temp_f_max=row.ideal_temp_f_max,
        ideal_ranges_by_space_type={
            key: IdealRangeSchema(**value) for key, value in (row.ideal_ranges_by_space_type or {}).items()
        },
    )


def _job_response(job) -> ImportJobResponse:
    return ImportJobResponse(
        id=job.id,
        building_code=job.building_code,
        status=job.status,
        stage=job.stage,
        total_files=job.total_files,
        processed_files=job.processed_files,
        total_rows=job.total_rows,
        processed_rows=job.processed_rows,
        processed_readings=job.processed_readings,
        conflict_count=job.conflict_count,
        current_file=job.current_file,
        error_summary=job.error_summary,
        error_details=job.error_details or [],
        started_at=job.started_at,
        finished_at=job.finished_at,
        progress_percent=calculate_import_progress(
            processed_rows=job.processed_rows,
            total_rows=job.total_rows,
            processed_files=job.processed_files,
            total_files=job.total_files,
        ),
        elapsed=format_elapsed(job.started_at, job.finished_at),
    )


def _split_csv_param(value: str | None) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


# ==================== Settings ====================

@router.get("/buildings/{building_code}/settings", response_model=TemperatureSettingsResponse)
async def get_building_settings(building_code: str, db: DbSession) -> TemperatureSettingsResponse:
    """Get temperature settings, falling back to defaults."""
    service = TemperatureSettingsService(db)
    row = await service.get_settings(building_code)
    return _settings_response(row)


@router.put("/buildings/{building_code}/settings", response_model=TemperatureSettingsResponse)
async def update_building_settings(
    building_code: str,
    data: TemperatureSettingsUpdateRequest,
    db: DbSession,
) -> TemperatureSettingsResponse:
    """Update timezone, snapshot times and ideal ranges."""
    service = TemperatureSettingsService(db)
    try:
        row = await service.update_settings(
            building_code,
            building_name=data.building_name,
            timezone=data.timezone,
            snapshot_times=(
                [slot.model_dump() for slot in data.snapshot_times]
                if data.snapshot_times is not None
                else None
            ),
            ideal_temp_f_min=data.ideal_temp_f_min,
            ideal_temp_f_max=data.ideal_temp_f_max,
            ideal_ranges_by_space_type=(
                {key: value.model_dump() for key, value in data.ideal_ranges_by_space_type.items()}
                if data.ideal_ranges_by_space_type is not None
                else None
            ),
        )
    except TemperatureError as e:
        _raise_http(e)
    return _settings_response(row)


# ==================== Imports ====================

@router.post("/buildings/{building_code}/imports/preview", response_model=ImportPreviewResponse)
async def preview_import(
    building_code: str,
    db: DbSession,
    rooms: Rooms,
    files: list[UploadFile] = File(..., description="CSV exports or ZIP archives of them"),
    building_name: str = Form(default=""),
) -> ImportPreviewResponse:
    """Parse uploads and suggest device mappings without writing anything."""
    service = TemperatureImportService(db, rooms)
    preview = await service.preview(building_code, await _read_uploads(files), building_name)
    return ImportPreviewResponse(
        items=[
            ImportItemResponse(
                file_name=item.file_name,
                file_hash=item.file_hash,
                status=item.status,
                device_id=item.device_id,
                device_label=item.device_label,
                temperature_unit=item.temperature_unit,
                row_count=item.row_count,
                parsed_count=item.parsed_count,
                error_count=item.error_count,
                errors=item.errors,
                min_timestamp=item.min_timestamp,
                max_timestamp=item.max_timestamp,
                duplicate=item.duplicate,
                suggested_room_key=item.suggested_room_key,
                suggested_room_name=rooms.display_name(item.suggested_room_key) if item.suggested_room_key else "",
                match_confidence=item.match_confidence,
                match_method=item.match_method,
                needs_review=item.needs_review,
            )
            for item in preview.items
        ],
        summary=ImportSummaryResponse(**vars(preview.summary)),
    )


@router.post(
    "/buildings/{building_code}/imports",
    response_model=ImportRunResponse,
    status_code=http_status.HTTP_201_CREATED,
)
async def run_import(
    building_code: str,
    db: DbSession,
    rooms: Rooms,
    files: list[UploadFile] = File(..., description="CSV exports or ZIP archives of them"),
    mapping_overrides: str = Form(default="{}", description="JSON object of device_id -> room_key"),
    building_name: str = Form(default=""),
) -> ImportRunResponse:
    """Import ready files and rebuild derived data for the touched days."""
    try:
        overrides = json.loads(mapping_overrides or "{}")
    except json.JSONDecodeError:
        overrides = None
    if not isinstance(overrides, dict) or not all(isinstance(v, str) for v in overrides.values()):
        raise HTTPException(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="mapping_overrides must be a JSON object of device_id to room_key",
        )

    service = TemperatureImportService(db, rooms)
    try:
        outcome = await service.run_import(
            building_code,
            await _read_uploads(files),
            mapping_overrides=overrides,
            building_name=building_name,
        )
    except TemperatureError as e:
        _raise_http(e)
    return ImportRunResponse(**vars(outcome))


@router.get("/imports/jobs/{job_id}", response_model=ImportJobResponse)
async def get_import_job(job_id: str, db: DbSession) -> ImportJobResponse:
    """Get import job progress."""
    tracker = ImportJobTracker(db)
    try:
        job = await tracker.get(job_id)
    except ImportJobError as e:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(e))
    return _job_response(job)


@router.get("/buildings/{building_code}/imports", response_model=list[ImportRecordResponse])
async def list_imports(
    building_code: str,
    db: DbSession,
    rooms: Rooms,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[ImportRecordResponse]:
    """Import history, newest first."""
    service = TemperatureImportService(db, rooms)
    records = await service.list_imports(building_code, limit=limit)
    return [ImportRecordResponse.model_validate(record) for record in records]


@router.delete("/imports/{import_id}", status_code=http_status.HTTP_204_NO_CONTENT)
async def delete_import(import_id: str, db: DbSession, rooms: Rooms) -> None:
    """Delete an import record so the same file can be imported again."""
    service = TemperatureImportService(db, rooms)
    try:
        await service.delete_import(import_id)
    except TemperatureError as e:
        _raise_http(e)


@router.put("/devices/{device_id}/mapping", response_model=DeviceResponse)
async def update_device_mapping(
    device_id: str,
    data: DeviceMappingRequest,
    db: DbSession,
    rooms: Rooms,
) -> DeviceResponse:
    """Manually map a device to a room."""
    service = TemperatureImportService(db, rooms)
    try:
        device = await service.update_device_mapping(device_id, data.room_key)
    except TemperatureError as e:
        _raise_http(e)
    return DeviceResponse.model_validate(device)


@router.post("/buildings/{building_code}/recompute", response_model=RecomputeResponse)
async def recompute(
    building_code: str,
    data: RecomputeRequest,
    db: DbSession,
    rooms: Rooms,
) -> RecomputeResponse:
    """Recompute snapshots and aggregates for a local date range."""
    service = TemperatureImportService(db, rooms)
    try:
        result = await service.recompute_range(building_code, data.start_date, data.end_date)
    except TemperatureError as e:
        _raise_http(e)
    return RecomputeResponse(**vars(result))


# ==================== Queries ====================

@router.get("/buildings/{building_code}/series", response_model=SeriesResponse)
async def get_series(
    building_code: str,
    db: DbSession,
    rooms: Rooms,
    room_keys: str | None = Query(default=None, description="Comma-separated room keys"),
    start: datetime | None = None,
    end: datetime | None = None,
    granularity: str = Query(default="auto", pattern="^(auto|raw|hourly|daily)$"),
    unit: str = Query(default="F", pattern="^[FfCc]$"),
) -> SeriesResponse:
    """Room series at a resolution chosen from the span unless forced."""
    building_settings = await TemperatureSettingsService(db).get_settings(building_code)
    service = TemperatureQueryService(db, resolver=rooms)
    try:
        result = await service.fetch_series(
            building_code,
            building_settings.timezone,
            room_keys=_split_csv_param(room_keys),
            start=start,
            end=end,
            granularity=granularity,
            unit=unit,
        )
    except TemperatureError as e:
        _raise_http(e)

    return SeriesResponse(
        building_code=building_code,
        granularity=result.granularity.value,
        unit=result.unit,
        series=[
            RoomSeriesResponse(
                room_key=entry.room_key,
                room_name=entry.room_name,
                points=[SeriesPointResponse(**vars(point)) for point in entry.points],
            )
            for entry in result.series
        ],
        last_updated=result.last_updated,
    )


@router.get("/buildings/{building_code}/snapshots", response_model=list[SnapshotResponse])
async def list_snapshots(
    building_code: str,
    db: DbSession,
    rooms: Rooms,
    date: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> list[SnapshotResponse]:
    """Snapshots for one date or a date range, with ideal-range status."""
    try:
        if date:
            start_date, end_date = validate_date_range(date, date)
        else:
            start_date, end_date = validate_date_range(start_date, end_date)
    except TemperatureError as e:
        _raise_http(e)

    building_settings = await TemperatureSettingsService(db).get_settings(building_code)
    query = (
        select(RoomSnapshot)
        .where(
            RoomSnapshot.building_code == building_code,
            RoomSnapshot.date_local >= start_date,
            RoomSnapshot.date_local <= end_date,
        )
        .order_by(RoomSnapshot.date_local, RoomSnapshot.room_key, RoomSnapshot.target_minutes)
    )
    result = await db.execute(query)

    responses = []
    for snapshot in result.scalars().all():
        room = rooms.get(snapshot.room_key)
        ideal = resolve_ideal_range(building_settings, room.space_type if room else None)
        response = SnapshotResponse.model_validate(snapshot)
        response.temperature_status = get_temperature_status(snapshot.temperature_f, ideal)
        responses.append(response)
    return responses


# ==================== Exports ====================

@router.get("/buildings/{building_code}/exports/snapshots.csv")
async def export_snapshots(
    building_code: str,
    db: DbSession,
    rooms: Rooms,
    start_date: str,
    end_date: str,
    room_keys: str | None = None,
    snapshot_ids: str | None = None,
) -> Response:
    """Download snapshots as CSV."""
    service = TemperatureExportService(db, resolver=rooms)
    try:
        content = await service.export_snapshots_csv(
            building_code,
            start_date,
            end_date,
            room_keys=_split_csv_param(room_keys),
            snapshot_ids=_split_csv_param(snapshot_ids),
        )
    except TemperatureError as e:
        _raise_http(e)
    filename = f"{building_code}_snapshots_{start_date}_{end_date}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/buildings/{building_code}/exports/raw.csv")
async def export_raw(
    building_code: str,
    db: DbSession,
    rooms: Rooms,
    start_date: str,
    end_date: str,
    room_keys: str | None = None,
) -> Response:
    """Download raw readings as CSV."""
    service = TemperatureExportService(db, resolver=rooms)
    try:
        content = await service.export_raw_csv(
            building_code,
            start_date,
            end_date,
            room_keys=_split_csv_param(room_keys),
        )
    except TemperatureError as e:
        _raise_http(e)
    filename = f"{building_code}_raw_{start_date}_{end_date}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
