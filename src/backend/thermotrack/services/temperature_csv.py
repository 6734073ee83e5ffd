"""CSV ingestion and validation for sensor export files.

Exports are a header row plus data rows. Columns are located by header
text, not position. Rows are parsed strictly; bad rows are counted, never
fatal, and a file missing required columns is reported as an error item so
the rest of the batch still goes through.
"""

import csv
import hashlib
import io
import math
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath

import structlog

from thermotrack.services.temperature_time import LocalTimestamp, parse_local_timestamp

logger = structlog.get_logger()

MISSING_COLUMNS_ERROR = "Missing required timestamp or temperature columns."
EMPTY_FILE_ERROR = "CSV is empty."
UNREADABLE_FILE_ERROR = "Unable to parse this CSV file."

_WHITESPACE_RE = re.compile(r"\s+")
_LEADING_FLOAT_RE = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


@dataclass
class UploadedFile:
    """Raw bytes of one uploaded file."""

    name: str
    content: bytes


@dataclass
class ColumnLayout:
    """Header positions detected in an export (-1 when absent)."""

    timestamp_index: int = -1
    temperature_index: int = -1
    humidity_index: int = -1
    temperature_unit: str | None = None

    @property
    def has_required(self) -> bool:
        return self.timestamp_index != -1 and self.temperature_index != -1


@dataclass
class ParsedSample:
    """One valid data row."""

    local: LocalTimestamp
    temperature_f: float | None
    temperature_c: float | None
    humidity: float | None

    @property
    def local_timestamp(self) -> str:
        return self.local.raw


@dataclass
class ParsedCsvFile:
    """Result of parsing one export file."""

    file_name: str
    file_hash: str
    temperature_unit: str = "F"
    row_count: int = 0
    parsed_count: int = 0
    error_count: int = 0
    min_timestamp: str = ""
    max_timestamp: str = ""
    samples: list[ParsedSample] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def normalize_csv_header(value: str | None) -> str:
    """Strip BOM/NBSP noise, collapse whitespace and lowercase a header cell."""
    if not value:
        return ""
    text = value.replace("\ufeff", "").replace("\u00a0", " ")
    return _WHITESPACE_RE.sub(" ", text).strip().lower()


def detect_columns(headers: list[str]) -> ColumnLayout:
    """Locate timestamp, temperature and humidity columns by header text."""
    normalized = [normalize_csv_header(h) for h in headers]
    layout = ColumnLayout()

    for index, header in enumerate(normalized):
        if layout.timestamp_index == -1 and "timestamp" in header:
            layout.timestamp_index = index
        if layout.temperature_index == -1 and "temperature" in header:
            layout.temperature_index = index
            if "fahrenheit" in header:
                layout.temperature_unit = "F"
            if "celsius" in header:
                layout.temperature_unit = "C"
        if layout.humidity_index == -1 and "humidity" in header:
            layout.humidity_index = index

    if layout.timestamp_index == -1:
        for index, header in enumerate(normalized):
            if "time" in header:
                layout.timestamp_index = index
                break

    return layout


def parse_float(value: str | None) -> float | None:
    """Parse the leading number of a cell ("72.5", "72.5 F"); None if absent."""
    if value is None:
        return None
    match = _LEADING_FLOAT_RE.match(str(value))
    if not match:
        return None
    number = float(match.group(0))
    if not math.isfinite(number):
        return None
    return number


def fahrenheit_to_celsius(value: float) -> float:
    return (value - 32) * 5 / 9


def celsius_to_fahrenheit(value: float) -> float:
    return value * 9 / 5 + 32


def compute_file_hash(content: bytes) -> str:
    """SHA-256 hex digest of the whole file."""
    return hashlib.sha256(content).hexdigest()


def _read_rows(content: bytes) -> list[list[str]]:
    text = content.decode("utf-8-sig", errors="replace")
    reader = csv.reader(io.StringIO(text))
    return [row for row in reader if any(cell.strip() for cell in row)]


def _cell(row: list[str], index: int) -> str | None:
    if index < 0 or index >= len(row):
        return None
    return row[index]


def parse_csv_file(file_name: str, content: bytes) -> ParsedCsvFile:
    """Parse an export file into samples, counting rejected rows."""
    result = ParsedCsvFile(file_name=file_name, file_hash=compute_file_hash(content))

    try:
        rows = _read_rows(content)
    except csv.Error as e:
        logger.warning("CSV parse error", file_name=file_name, error=str(e))
        result.errors.append(UNREADABLE_FILE_ERROR)
        result.error_count = 1
        return result

    if not rows:
        result.errors.append(EMPTY_FILE_ERROR)
        result.error_count = 1
        return result

    header_row, data_rows = rows[0], rows[1:]
    layout = detect_columns(header_row)
    if not layout.has_required:
        result.errors.append(MISSING_COLUMNS_ERROR)
        result.error_count = 1
        return result

    unit = layout.temperature_unit or "F"
    result.temperature_unit = unit
    result.row_count = len(data_rows)

    for row in data_rows:
        parts = parse_local_timestamp(_cell(row, layout.timestamp_index))
        if parts is None:
            result.error_count += 1
            continue
        temperature = parse_float(_cell(row, layout.temperature_index))
        if temperature is None:
            result.error_count += 1
            continue

        raw_humidity = _cell(row, layout.humidity_index)
        humidity = parse_float(raw_humidity) if raw_humidity not in (None, "") else None

        if unit == "C":
            temperature_c = temperature
            temperature_f = celsius_to_fahrenheit(temperature)
        else:
            temperature_f = temperature
            temperature_c = fahrenheit_to_celsius(temperature)

        result.samples.append(
            ParsedSample(
                local=parts,
                temperature_f=temperature_f,
                temperature_c=temperature_c,
                humidity=humidity,
            )
        )
        result.parsed_count += 1

        raw = parts.raw
        if not result.min_timestamp or raw < result.min_timestamp:
            result.min_timestamp = raw
        if not result.max_timestamp or raw > result.max_timestamp:
            result.max_timestamp = raw

    return result


def expand_uploads(files: list[UploadedFile]) -> list[UploadedFile]:
    """Flatten ZIP archives into their CSV members; pass CSV files through."""
    expanded: list[UploadedFile] = []
    for upload in files:
        lower_name = upload.name.lower()
        if lower_name.endswith(".zip"):
            try:
                with zipfile.ZipFile(io.BytesIO(upload.content)) as archive:
                    for info in archive.infolist():
                        if info.is_dir() or not info.filename.lower().endswith(".csv"):
                            continue
                        expanded.append(
                            UploadedFile(
                                name=PurePosixPath(info.filename).name or info.filename,
                                content=archive.read(info),
                            )
                        )
            except zipfile.BadZipFile as e:
                logger.error("Failed to extract ZIP", file_name=upload.name, error=str(e))
        elif lower_name.endswith(".csv"):
            expanded.append(upload)
        else:
            logger.debug("Skipping non-CSV upload", file_name=upload.name)
    return expanded
