"""Temperature import orchestration.

Preview parses every uploaded file, flags duplicates by content hash and
suggests a room for each device without writing anything. Import runs the
ready files device by device: merge readings, rebuild the aggregates and
snapshots of the dates that gained readings, then move on. Progress is
reported through an import job that always ends completed or failed.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from thermotrack.core.config import settings
from thermotrack.core.metrics import record_duplicate_file
from thermotrack.models.temperature_device import MappingMethod, TemperatureDevice
from thermotrack.models.temperature_import import TemperatureImport
from thermotrack.models.temperature_reading import DeviceDayReadings
from thermotrack.services.room_resolver import Room, RoomResolver
from thermotrack.services.temperature_aggregation import AggregateService, RoomDay, merge_room_samples
from thermotrack.services.temperature_csv import (
    ParsedSample,
    UploadedFile,
    expand_uploads,
    parse_csv_file,
)
from thermotrack.services.temperature_import_jobs import ImportJobTracker, ImportStage, ProgressThrottle
from thermotrack.services.temperature_matcher import (
    normalize_match_text,
    parse_device_label_from_filename,
    resolve_device_mapping,
    to_device_id,
    to_import_id,
)
from thermotrack.services.temperature_merge import (
    DeviceBatch,
    TemperatureMergeService,
    apply_watermarks,
)
from thermotrack.services.temperature_query_service import chunked
from thermotrack.services.temperature_settings_service import (
    TemperatureSettingsService,
    snapshot_slots,
)
from thermotrack.services.temperature_snapshots import SnapshotService, SnapshotSlot
from thermotrack.services.temperature_time import (
    InvalidTimezoneError,
    TemperatureError,
    is_valid_timezone,
    validate_date_range,
)

logger = structlog.get_logger()


class MappingRequiredError(TemperatureError):
    """A device to be imported has neither a suggested room nor an override."""

    def __init__(self, device_labels: list[str]):
        self.device_labels = device_labels
        super().__init__(
            "Resolve device-to-room mappings before importing: " + ", ".join(device_labels)
        )


class NothingToImportError(TemperatureError):
    """No uploaded file is ready for import."""
    pass


class UnknownRoomError(TemperatureError):
    """A room key is not in the room directory."""
    pass


class DeviceNotFoundError(TemperatureError):
    """Device does not exist."""
    pass


class ImportRecordNotFoundError(TemperatureError):
    """Import record does not exist."""
    pass


@dataclass
class ImportItem:
    """Preview of one uploaded CSV file."""

    file_name: str
    file_hash: str
    device_label: str = ""
    device_id: str = ""
    temperature_unit: str = "F"
    row_count: int = 0
    parsed_count: int = 0
    error_count: int = 0
    errors: list[str] = field(default_factory=list)
    min_timestamp: str = ""
    max_timestamp: str = ""
    duplicate: bool = False
    suggested_room_key: str = ""
    match_confidence: float = 0.0
    match_method: str = MappingMethod.NONE.value
    needs_review: bool = False
    samples: list[ParsedSample] = field(default_factory=list, repr=False)

    @property
    def ready(self) -> bool:
        return (
            not self.duplicate
            and self.error_count == 0
            and self.parsed_count > 0
            and bool(self.device_id)
        )

    @property
    def status(self) -> str:
        if self.duplicate:
            return "duplicate"
        if self.ready:
            return "ready"
        return "error"


@dataclass
class ImportSummary:
    """Counts shown to the operator before anything is written."""

    file_count: int = 0
    device_count: int = 0
    total_rows: int = 0
    parsed_rows: int = 0
    duplicate_count: int = 0
    error_count: int = 0
    ready_count: int = 0

    @classmethod
    def from_items(cls, items: list[ImportItem]) -> "ImportSummary":
        summary = cls(file_count=len(items))
        summary.device_count = len({item.device_id for item in items if item.device_id})
        for item in items:
            summary.total_rows += item.row_count
            summary.parsed_rows += item.parsed_count
            summary.error_count += item.error_count
            if item.duplicate:
                summary.duplicate_count += 1
            if item.ready:
                summary.ready_count += 1
        return summary


@dataclass
class ImportPreview:
    items: list[ImportItem]
    summary: ImportSummary


@dataclass
class ImportOutcome:
    """Result of a completed import run."""

    job_id: str | None
    status: str
    new_readings: int = 0
    conflicts: int = 0
    files_imported: int = 0
    duplicates: int = 0


@dataclass
class RecomputeResult:
    days: int = 0
    snapshot_writes: int = 0
    aggregate_writes: int = 0


class TemperatureImportService:
    """Preview, import and maintenance operations for temperature data."""

    def __init__(
        self,
        db: AsyncSession,
        resolver: RoomResolver,
        tracker: ImportJobTracker | None = None,
    ):
        self.db = db
        self.resolver = resolver
        self.settings_service = TemperatureSettingsService(db)
        self.merge_service = TemperatureMergeService(db)
        self.snapshot_service = SnapshotService(db)
        self.aggregate_service = AggregateService(db)
        self.tracker = tracker or ImportJobTracker(db)

    # ==================== Preview ====================

    async def preview(
        self,
        building_code: str,
        files: list[UploadedFile],
        building_name: str = "",
    ) -> ImportPreview:
        """Parse uploads and suggest mappings without writing anything."""
        uploads = expand_uploads(files)
        parsed_files = [parse_csv_file(upload.name, upload.content) for upload in uploads]

        known_hashes = await self._existing_hashes(building_code, [p.file_hash for p in parsed_files])
        rooms = self._rooms_for(building_code, building_name)

        items: list[ImportItem] = []
        seen_hashes: set[str] = set()
        matchable: list[tuple[ImportItem, str]] = []

        for parsed in parsed_files:
            duplicate = parsed.file_hash in known_hashes or parsed.file_hash in seen_hashes
            seen_hashes.add(parsed.file_hash)
            if duplicate:
                record_duplicate_file()

            item = ImportItem(
                file_name=parsed.file_name,
                file_hash=parsed.file_hash,
                temperature_unit=parsed.temperature_unit,
                row_count=parsed.row_count,
                parsed_count=parsed.parsed_count,
                error_count=parsed.error_count,
                errors=list(parsed.errors),
                min_timestamp=parsed.min_timestamp,
                max_timestamp=parsed.max_timestamp,
                duplicate=duplicate,
                samples=parsed.samples,
            )
            items.append(item)
            if parsed.errors:
                continue
            label = parse_device_label_from_filename(parsed.file_name)
            item.device_label = label
            item.device_id = to_device_id(building_code, label)
            matchable.append((item, label))

        devices = await self._load_devices([item.device_id for item, _ in matchable])
        threshold = settings.auto_match_threshold
        for item, label in matchable:
            suggestion = resolve_device_mapping(devices.get(item.device_id), label, rooms)
            item.suggested_room_key = suggestion.room_key
            item.match_confidence = suggestion.confidence
            item.match_method = suggestion.method
            item.needs_review = suggestion.confidence < threshold

        summary = ImportSummary.from_items(items)
        logger.info(
            "Import preview built",
            building_code=building_code,
            files=summary.file_count,
            ready=summary.ready_count,
            duplicates=summary.duplicate_count,
        )
        return ImportPreview(items=items, summary=summary)

    # ==================== Import ====================

    async def run_import(
        self,
        building_code: str,
        files: list[UploadedFile],
        mapping_overrides: dict[str, str] | None = None,
        building_name: str = "",
    ) -> ImportOutcome:
        """Import every ready file.

        ``mapping_overrides`` maps device id to room key and wins over any
        suggestion for this run.

        Raises:
            InvalidTimezoneError: If the building timezone is not valid.
            UnknownRoomError: If an override names a room outside the directory.
            MappingRequiredError: If a ready device has no room.
            NothingToImportError: If no file is ready and none was a duplicate.
        """
        building_settings = await self.settings_service.get_settings(building_code, building_name, create=True)
        tz_name = building_settings.timezone
        if not is_valid_timezone(tz_name):
            raise InvalidTimezoneError(f"Update the building timezone before importing: {tz_name!r}")
        building_name = building_name or building_settings.building_name or building_code
        slots = snapshot_slots(building_settings)

        overrides = {device_id: room for device_id, room in (mapping_overrides or {}).items() if room}
        for room_key in overrides.values():
            if self.resolver.get(room_key) is None:
                raise UnknownRoomError(f"Unknown room {room_key}")

        preview = await self.preview(building_code, files, building_name)
        unresolved = sorted({
            item.device_label or item.device_id
            for item in preview.items
            if item.device_id
            and not item.duplicate
            and not overrides.get(item.device_id)
            and not item.suggested_room_key
        })
        if unresolved:
            raise MappingRequiredError(unresolved)

        duplicates = preview.summary.duplicate_count
        queue = [item for item in preview.items if item.ready and item.samples]
        if not queue:
            if duplicates:
                logger.info("Import skipped, files already imported", building_code=building_code, duplicates=duplicates)
                return ImportOutcome(job_id=None, status="duplicate", duplicates=duplicates)
            raise NothingToImportError("No valid files are ready for import")

        total_rows = sum(len(item.samples) for item in queue)
        job, throttle = await self.tracker.create(
            building_code,
            building_name,
            total_files=len(queue),
            total_rows=total_rows,
        )
        job_id = job.id
        progress = {"processed_files": 0, "processed_rows": 0}
        totals = {"new_readings": 0, "conflicts": 0}

        try:
            await self.tracker.update(job_id, throttle, force=True, stage=ImportStage.WRITING, **progress)

            for item in queue:
                await self._import_item(
                    item,
                    building_code=building_code,
                    building_name=building_name,
                    tz_name=tz_name,
                    slots=slots,
                    override=overrides.get(item.device_id),
                    job_id=job_id,
                    throttle=throttle,
                    progress=progress,
                    totals=totals,
                )
                progress["processed_files"] += 1
                await self.tracker.update(
                    job_id,
                    throttle,
                    force=True,
                    stage=ImportStage.WRITING,
                    current_file=None,
                    processed_readings=totals["new_readings"],
                    conflict_count=totals["conflicts"],
                    **progress,
                )

            await self.tracker.update(job_id, throttle, force=True, stage=ImportStage.FINALIZING, **progress)
            job = await self.tracker.complete(
                job_id,
                processed_readings=totals["new_readings"],
                conflict_count=totals["conflicts"],
                **progress,
            )
        except Exception as e:
            await self.db.rollback()
            await self.tracker.fail(job_id, e, **progress)
            raise

        return ImportOutcome(
            job_id=job_id,
            status=job.status,
            new_readings=totals["new_readings"],
            conflicts=totals["conflicts"],
            files_imported=progress["processed_files"],
            duplicates=duplicates,
        )

    async def _import_item(
        self,
        item: ImportItem,
        *,
        building_code: str,
        building_name: str,
        tz_name: str,
        slots: list[SnapshotSlot],
        override: str | None,
        job_id: str,
        throttle: ProgressThrottle,
        progress: dict[str, int],
        totals: dict[str, int],
    ) -> None:
        device_id = item.device_id
        device_label = item.device_label or device_id
        room_key = override or item.suggested_room_key
        room_name = self.resolver.display_name(room_key)

        await self.tracker.update(
            job_id,
            throttle,
            force=True,
            stage=ImportStage.WRITING,
            current_file=item.file_name or device_label,
            **progress,
        )

        async def on_progress(rows: int) -> None:
            progress["processed_rows"] += rows
            await self.tracker.update(job_id, throttle, stage=ImportStage.WRITING, **progress)

        batch = DeviceBatch(
            building_code=building_code,
            building_name=building_name,
            device_id=device_id,
            device_label=device_label,
            timezone=tz_name,
        )
        result = await self.merge_service.merge_device_samples(batch, item.samples, on_progress=on_progress)
        totals["new_readings"] += result.new_readings
        totals["conflicts"] += result.conflicts

        # Commits inside the merge may have expired it; read it fresh
        device = await self.db.get(TemperatureDevice, device_id, populate_existing=True)
        is_new_device = device is None
        if is_new_device:
            device = TemperatureDevice(
                id=device_id,
                building_code=building_code,
                building_name=building_name,
                label=device_label,
                label_normalized=normalize_match_text(device_label),
                mapping_manual=False,
            )
        manual, method, confidence = self._mapping_for_import(item, device, override)

        mapping_changed = (
            (device.room_key or "") != room_key
            or bool(device.mapping_manual) != manual
            or (device.mapping_method or MappingMethod.AUTO.value) != method
        )
        watermarks_moved = apply_watermarks(device, result)
        now = datetime.now(timezone.utc)

        if result.new_readings > 0 or mapping_changed or watermarks_moved:
            device.building_name = building_name
            device.label = device_label
            device.label_normalized = normalize_match_text(device_label)
            if mapping_changed or device.mapping_confidence != confidence:
                device.mapping_updated_at = now
            device.room_key = room_key
            device.mapping_method = method
            device.mapping_confidence = confidence
            device.mapping_manual = manual
            if result.new_readings > 0:
                device.last_imported_at = now
            if is_new_device:
                self.db.add(device)

        await self._write_import_record(
            item,
            building_code=building_code,
            building_name=building_name,
            room_key=room_key,
            room_name=room_name,
            method=method,
            confidence=confidence,
            manual=manual,
            new_readings=result.new_readings,
            conflicts=result.conflicts,
        )
        await self.db.commit()

        if not result.updated_days:
            return

        await self.tracker.update(job_id, throttle, force=True, stage=ImportStage.AGGREGATING, **progress)
        days = []
        for date_local in sorted(result.updated_days):
            day = await self._load_room_day(building_code, building_name, tz_name, room_key, date_local)
            if day is not None:
                days.append(day)
        for day in days:
            await self.aggregate_service.recompute_for_day(day)
        await self.db.commit()

        if slots:
            await self.tracker.update(job_id, throttle, force=True, stage=ImportStage.SNAPSHOTS, **progress)
            for day in days:
                await self.snapshot_service.recompute_for_day(day, slots)
            await self.db.commit()

    @staticmethod
    def _mapping_for_import(
        item: ImportItem,
        device: TemperatureDevice,
        override: str | None,
    ) -> tuple[bool, str, float]:
        """Return ``(manual, method, confidence)`` for the device after this import.

        An override is a manual mapping. Without one, a device that already
        has a room keeps its stored mapping, manual flag included.
        """
        if override:
            return True, MappingMethod.MANUAL.value, 1.0
        if device.room_key and device.room_key == item.suggested_room_key:
            confidence = device.mapping_confidence
            return (
                bool(device.mapping_manual),
                device.mapping_method or MappingMethod.EXISTING.value,
                1.0 if confidence is None else confidence,
            )
        method = item.match_method or MappingMethod.AUTO.value
        confidence = item.match_confidence
        return False, method, 1.0 if confidence is None else confidence

    async def _write_import_record(
        self,
        item: ImportItem,
        *,
        building_code: str,
        building_name: str,
        room_key: str,
        room_name: str,
        method: str,
        confidence: float,
        manual: bool,
        new_readings: int,
        conflicts: int,
    ) -> None:
        import_id = to_import_id(building_code, item.file_hash)
        record = await self.db.get(TemperatureImport, import_id)
        if record is None:
            record = TemperatureImport(id=import_id)
            self.db.add(record)
        record.building_code = building_code
        record.building_name = building_name
        record.file_hash = item.file_hash
        record.file_name = item.file_name
        record.device_id = item.device_id
        record.device_label = item.device_label
        record.room_key = room_key
        record.room_name = room_name
        record.mapping_method = method
        record.mapping_confidence = confidence
        record.mapping_manual = manual
        record.row_count = item.row_count
        record.parsed_count = item.parsed_count
        record.new_readings = new_readings
        record.conflicts = conflicts
        record.date_range_start = item.min_timestamp or None
        record.date_range_end = item.max_timestamp or None
        record.temperature_unit = item.temperature_unit

    # ==================== Recompute ====================

    async def recompute_range(
        self,
        building_code: str,
        start_date: str,
        end_date: str,
    ) -> RecomputeResult:
        """Rebuild snapshots and aggregates for every mapped room day in the range.

        A room day merges the readings of every device mapped to the room.

        Raises:
            InvalidTimezoneError: If the building timezone is not valid.
            InvalidDateRangeError: If the dates are malformed or inverted.
        """
        building_settings = await self.settings_service.get_settings(building_code, create=True)
        tz_name = building_settings.timezone
        if not is_valid_timezone(tz_name):
            raise InvalidTimezoneError(f"Update the building timezone before recomputing: {tz_name!r}")
        start_date, end_date = validate_date_range(start_date, end_date)
        slots = snapshot_slots(building_settings)
        building_name = building_settings.building_name or building_code

        query = (
            select(DeviceDayReadings)
            .where(
                DeviceDayReadings.building_code == building_code,
                DeviceDayReadings.date_local >= start_date,
                DeviceDayReadings.date_local <= end_date,
            )
            .order_by(DeviceDayReadings.device_id, DeviceDayReadings.date_local)
        )
        result = await self.db.execute(query)
        day_rows = list(result.scalars().all())
        devices = await self._load_devices(sorted({row.device_id for row in day_rows}))

        contributions: dict[tuple[str, str], list[tuple[TemperatureDevice, DeviceDayReadings]]] = {}
        for row in day_rows:
            device = devices.get(row.device_id)
            if device is None or not device.room_key:
                continue
            contributions.setdefault((device.room_key, row.date_local), []).append((device, row))

        outcome = RecomputeResult()
        for (room_key, date_local), pairs in sorted(contributions.items(), key=lambda item: item[0]):
            day = self._room_day(building_code, building_name, tz_name, room_key, date_local, pairs)
            outcome.snapshot_writes += await self.snapshot_service.recompute_for_day(day, slots)
            if await self.aggregate_service.recompute_for_day(day):
                outcome.aggregate_writes += 1
            outcome.days += 1
            await self.db.commit()

        logger.info(
            "Recompute finished",
            building_code=building_code,
            start_date=start_date,
            end_date=end_date,
            days=outcome.days,
            snapshot_writes=outcome.snapshot_writes,
            aggregate_writes=outcome.aggregate_writes,
        )
        return outcome

    # ==================== Devices & history ====================

    async def update_device_mapping(self, device_id: str, room_key: str) -> TemperatureDevice:
        """Set a manual mapping and carry it onto the device's import records."""
        device = await self.db.get(TemperatureDevice, device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device {device_id} not found")
        if self.resolver.get(room_key) is None:
            raise UnknownRoomError(f"Unknown room {room_key}")

        room_name = self.resolver.display_name(room_key)
        device.room_key = room_key
        device.mapping_method = MappingMethod.MANUAL.value
        device.mapping_confidence = 1.0
        device.mapping_manual = True
        device.mapping_updated_at = datetime.now(timezone.utc)

        result = await self.db.execute(select(TemperatureImport).where(TemperatureImport.device_id == device_id))
        records = result.scalars().all()
        for record in records:
            record.room_key = room_key
            record.room_name = room_name
            record.mapping_method = MappingMethod.MANUAL.value
            record.mapping_confidence = 1.0
            record.mapping_manual = True

        await self.db.commit()
        await self.db.refresh(device)

        logger.info("Device mapping updated", device_id=device_id, room_key=room_key, import_records=len(records))
        return device

    async def list_imports(self, building_code: str, limit: int = 100) -> list[TemperatureImport]:
        """Import history for a building, newest first."""
        query = (
            select(TemperatureImport)
            .where(TemperatureImport.building_code == building_code)
            .order_by(TemperatureImport.created_at.desc(), TemperatureImport.file_name)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def delete_import(self, import_id: str) -> None:
        """Remove an import record; the readings it produced are kept."""
        record = await self.db.get(TemperatureImport, import_id)
        if record is None:
            raise ImportRecordNotFoundError(f"Import {import_id} not found")
        await self.db.delete(record)
        await self.db.commit()
        logger.info("Import record deleted", import_id=import_id)

    # ==================== Helpers ====================

    def _rooms_for(self, building_code: str, building_name: str = "") -> list[Room]:
        rooms = self.resolver.list_rooms(building_code)
        if not rooms and building_name:
            rooms = self.resolver.list_rooms(building_name)
        return rooms

    def _room_day(
        self,
        building_code: str,
        building_name: str,
        tz_name: str,
        room_key: str,
        date_local: str,
        contributions: list[tuple[TemperatureDevice, DeviceDayReadings]],
    ) -> RoomDay | None:
        if not contributions:
            return None
        contributions = sorted(contributions, key=lambda pair: pair[0].id)
        first = contributions[0][0]
        return RoomDay(
            building_code=building_code,
            building_name=building_name,
            room_key=room_key,
            room_name=self.resolver.display_name(room_key),
            date_local=date_local,
            timezone=tz_name,
            device_id=first.id,
            device_label=first.label or first.id,
            samples=merge_room_samples(
                (device.id, device.label or device.id, row.samples) for device, row in contributions
            ),
        )

    async def _load_room_day(
        self,
        building_code: str,
        building_name: str,
        tz_name: str,
        room_key: str,
        date_local: str,
    ) -> RoomDay | None:
        """Readings of every device mapped to ``room_key`` on ``date_local``."""
        result = await self.db.execute(
            select(TemperatureDevice).where(
                TemperatureDevice.building_code == building_code,
                TemperatureDevice.room_key == room_key,
            )
        )
        devices = {device.id: device for device in result.scalars().all()}

        contributions = []
        for chunk in chunked(sorted(devices), settings.query_in_chunk_size):
            query = (
                select(DeviceDayReadings)
                .where(
                    DeviceDayReadings.device_id.in_(chunk),
                    DeviceDayReadings.date_local == date_local,
                )
                .execution_options(populate_existing=True)
            )
            result = await self.db.execute(query)
            contributions.extend((devices[row.device_id], row) for row in result.scalars().all())
        return self._room_day(building_code, building_name, tz_name, room_key, date_local, contributions)

    async def _existing_hashes(self, building_code: str, hashes: list[str]) -> set[str]:
        unique = sorted(set(hashes))
        found: set[str] = set()
        for chunk in chunked(unique, settings.query_in_chunk_size):
            query = select(TemperatureImport.file_hash).where(
                TemperatureImport.building_code == building_code,
                TemperatureImport.file_hash.in_(chunk),
            )
            result = await self.db.execute(query)
            found.update(row[0] for row in result.all())
        return found

    async def _load_devices(self, device_ids: list[str]) -> dict[str, TemperatureDevice]:
        devices: dict[str, TemperatureDevice] = {}
        for chunk in chunked(sorted(set(device_ids)), settings.query_in_chunk_size):
            result = await self.db.execute(select(TemperatureDevice).where(TemperatureDevice.id.in_(chunk)))
            for device in result.scalars().all():
                devices[device.id] = device
        return devices
