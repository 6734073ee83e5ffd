"""Import job tracker.

An import job is a small progress record that moves from ``running`` to
``completed`` or ``failed`` and never leaves a terminal state. Progress
writes during a long import are throttled through an explicit
ProgressThrottle that the caller keeps alongside the job id.
"""

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from thermotrack.core.config import settings
from thermotrack.core.metrics import record_import_job
from thermotrack.models.temperature_import import ImportJobStatus, TemperatureImportJob
from thermotrack.services.temperature_time import ensure_utc

logger = structlog.get_logger()


class ImportStage:
    """Human-readable stage names shown while a job runs."""

    PREPARING = "Preparing"
    WRITING = "Writing readings"
    AGGREGATING = "Aggregating"
    SNAPSHOTS = "Updating snapshots"
    FINALIZING = "Finalizing"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ImportJobError(Exception):
    """Import job lookup or transition error."""
    pass


# Valid state transitions: from_state -> [to_states]
VALID_TRANSITIONS: dict[ImportJobStatus, list[ImportJobStatus]] = {
    ImportJobStatus.RUNNING: [
        ImportJobStatus.COMPLETED,
        ImportJobStatus.FAILED,
    ],
    ImportJobStatus.COMPLETED: [],  # Terminal state
    ImportJobStatus.FAILED: [],  # Terminal state
}

# Progress fields callers may set through update()
PROGRESS_FIELDS = frozenset({
    "stage",
    "total_files",
    "processed_files",
    "total_rows",
    "processed_rows",
    "processed_readings",
    "conflict_count",
    "current_file",
})


def can_transition(from_status: ImportJobStatus, to_status: ImportJobStatus) -> bool:
    """Check whether a job may move from one status to another."""
    return to_status in VALID_TRANSITIONS.get(from_status, [])


@dataclass
class ProgressThrottle:
    """Throttle state for one job's progress writes."""

    last_write_time: float | None = None
    last_row_count: int = 0

    def should_write(
        self,
        now: float,
        row_count: int,
        min_interval: float,
        min_rows: int,
        force: bool = False,
    ) -> bool:
        """A non-forced write needs both enough time and enough new rows since the last one."""
        if force or self.last_write_time is None:
            return True
        elapsed = now - self.last_write_time
        new_rows = row_count - self.last_row_count
        return elapsed >= min_interval and new_rows >= min_rows

    def mark(self, now: float, row_count: int) -> None:
        self.last_write_time = now
        self.last_row_count = row_count


def calculate_import_progress(
    processed_rows: int = 0,
    total_rows: int = 0,
    processed_files: int = 0,
    total_files: int = 0,
) -> int:
    """Percent complete (0-100): by rows when the row total is known, else by files."""
    if total_rows > 0:
        return min(100, round(processed_rows / total_rows * 100))
    if total_files > 0:
        return min(100, round(processed_files / total_files * 100))
    return 0


def format_elapsed(started_at: datetime | None, now: datetime | None = None) -> str:
    """Elapsed time as ``Xh Ym``, ``Xm Ys`` or ``Xs``."""
    if started_at is None:
        return ""
    now = now or datetime.now(timezone.utc)
    total_seconds = max(0, int((ensure_utc(now) - ensure_utc(started_at)).total_seconds()))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


class ImportJobTracker:
    """Creates and updates import job rows."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], float] = time.monotonic,
        min_interval: float | None = None,
        min_rows: int | None = None,
    ):
        self.db = db
        self.clock = clock
        self.min_interval = settings.import_progress_min_interval if min_interval is None else min_interval
        self.min_rows = settings.import_progress_min_rows if min_rows is None else min_rows

    async def create(
        self,
        building_code: str,
        building_name: str = "",
        total_files: int = 0,
        total_rows: int = 0,
    ) -> tuple[TemperatureImportJob, ProgressThrottle]:
        """Create a running job and the throttle that goes with it."""
        job = TemperatureImportJob(
            id=str(uuid.uuid4()),
            building_code=building_code,
            building_name=building_name or building_code,
            status=ImportJobStatus.RUNNING.value,
            stage=ImportStage.PREPARING,
            total_files=total_files,
            total_rows=total_rows,
            processed_files=0,
            processed_rows=0,
            processed_readings=0,
            conflict_count=0,
            error_details=[],
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(job)
        await self.db.commit()

        throttle = ProgressThrottle()
        throttle.mark(self.clock(), 0)

        logger.info(
            "Import job created",
            job_id=job.id,
            building_code=building_code,
            total_files=total_files,
            total_rows=total_rows,
        )
        return job, throttle

    async def get(self, job_id: str) -> TemperatureImportJob:
        job = await self.db.get(TemperatureImportJob, job_id)
        if job is None:
            raise ImportJobError(f"Import job {job_id} not found")
        return job

    async def update(
        self,
        job_id: str,
        throttle: ProgressThrottle,
        force: bool = False,
        **fields: Any,
    ) -> bool:
        """Write progress fields unless throttled; returns True when written.

        Updates to a job in a terminal state are ignored.
        """
        unknown = set(fields) - PROGRESS_FIELDS
        if unknown:
            raise ImportJobError(f"Unknown progress fields: {', '.join(sorted(unknown))}")

        now = self.clock()
        row_count = fields.get("processed_rows", throttle.last_row_count)
        if not throttle.should_write(now, row_count, self.min_interval, self.min_rows, force=force):
            return False

        job = await self.get(job_id)
        if job.is_terminal:
            logger.warning("Ignoring progress update for finished job", job_id=job_id, status=job.status)
            return False

        for name, value in fields.items():
            setattr(job, name, value)
        await self.db.commit()
        throttle.mark(now, row_count)
        return True

    async def complete(self, job_id: str, **fields: Any) -> TemperatureImportJob:
        """Move a running job to ``completed`` with its final counters."""
        job = await self._transition(job_id, ImportJobStatus.COMPLETED)
        for name, value in fields.items():
            if name in PROGRESS_FIELDS:
                setattr(job, name, value)
        job.stage = ImportStage.COMPLETED
        job.current_file = None
        await self.db.commit()

        duration = self._duration(job)
        record_import_job(job.status, duration)
        logger.info(
            "Import job completed",
            job_id=job_id,
            processed_files=job.processed_files,
            processed_readings=job.processed_readings,
            conflicts=job.conflict_count,
            duration=duration,
        )
        return job

    async def fail(self, job_id: str, error: BaseException | str, **fields: Any) -> TemperatureImportJob:
        """Move a running job to ``failed`` capturing a summary and detail lines."""
        job = await self._transition(job_id, ImportJobStatus.FAILED)
        summary, details = self._describe_error(error)
        for name, value in fields.items():
            if name in PROGRESS_FIELDS:
                setattr(job, name, value)
        job.stage = ImportStage.FAILED
        job.error_summary = summary
        job.error_details = details
        job.current_file = None
        await self.db.commit()

        record_import_job(job.status, self._duration(job))
        logger.error("Import job failed", job_id=job_id, error=summary)
        return job

    async def _transition(self, job_id: str, to_status: ImportJobStatus) -> TemperatureImportJob:
        job = await self.get(job_id)
        current = ImportJobStatus(job.status)
        if not can_transition(current, to_status):
            raise ImportJobError(
                f"Cannot transition import job from {current.value} to {to_status.value}"
            )
        job.status = to_status.value
        job.finished_at = datetime.now(timezone.utc)
        return job

    @staticmethod
    def _describe_error(error: BaseException | str) -> tuple[str, list[str]]:
        if isinstance(error, str):
            return error or "Import failed", [error] if error else []
        message = str(error)
        details = [message] if message else []
        code = getattr(error, "code", None)
        if code:
            details.append(f"Code: {code}")
        return message or "Import failed", details

    @staticmethod
    def _duration(job: TemperatureImportJob) -> float | None:
        if job.started_at is None or job.finished_at is None:
            return None
        return (ensure_utc(job.finished_at) - ensure_utc(job.started_at)).total_seconds()
