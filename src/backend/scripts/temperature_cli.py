#!/usr/bin/env python3
"""Thermotrack command line - preview, import and recompute temperature data."""

import asyncio
import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from thermotrack.core.config import settings
from thermotrack.core.deps import load_room_resolver
from thermotrack.core.logging_config import configure_logging
from thermotrack.models.base import Base
from thermotrack.services.temperature_csv import UploadedFile
from thermotrack.services.temperature_import_service import MappingRequiredError, TemperatureImportService
from thermotrack.services.temperature_time import TemperatureError


def read_files(paths: list[str]) -> list[UploadedFile]:
    """Read CSV or ZIP files; directories contribute their *.csv and *.zip files."""
    files = []
    for raw in paths:
        path = Path(raw)
        candidates = sorted(
            p for p in path.iterdir() if p.suffix.lower() in (".csv", ".zip")
        ) if path.is_dir() else [path]
        for candidate in candidates:
            files.append(UploadedFile(name=candidate.name, content=candidate.read_bytes()))
    return files


def parse_mappings(values: list[str]) -> dict[str, str]:
    """Parse ``DEVICE_ID=ROOM_KEY`` pairs."""
    overrides = {}
    for value in values:
        device_id, sep, room_key = value.partition("=")
        if not sep or not device_id or not room_key:
            raise argparse.ArgumentTypeError(f"Expected DEVICE_ID=ROOM_KEY, got {value!r}")
        overrides[device_id.strip()] = room_key.strip()
    return overrides


async def run(args: argparse.Namespace) -> int:
    engine = create_async_engine(settings.database_url, echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    resolver = load_room_resolver(args.rooms)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        async with async_session() as db:
            service = TemperatureImportService(db, resolver)

            if args.command == "preview":
                preview = await service.preview(args.building, read_files(args.paths), args.building_name)
                for item in preview.items:
                    room = item.suggested_room_key or "-"
                    print(
                        f"{item.status:<9} {item.file_name}  device={item.device_id or '-'}  "
                        f"rows={item.parsed_count}/{item.row_count}  room={room} "
                        f"({item.match_method}, {item.match_confidence:.2f})"
                    )
                    for error in item.errors:
                        print(f"          ! {error}")
                s = preview.summary
                print(
                    f"\n{s.file_count} files, {s.device_count} devices, {s.ready_count} ready, "
                    f"{s.duplicate_count} duplicates, {s.parsed_rows}/{s.total_rows} rows parsed"
                )

            elif args.command == "import":
                outcome = await service.run_import(
                    args.building,
                    read_files(args.paths),
                    mapping_overrides=args.overrides,
                    building_name=args.building_name,
                )
                if outcome.job_id is None:
                    print(f"Nothing new: {outcome.duplicates} files already imported")
                else:
                    print(
                        f"Job {outcome.job_id} {outcome.status}: {outcome.files_imported} files, "
                        f"{outcome.new_readings} new readings, {outcome.conflicts} conflicts, "
                        f"{outcome.duplicates} duplicates skipped"
                    )

            elif args.command == "recompute":
                result = await service.recompute_range(args.building, args.start_date, args.end_date)
                print(
                    f"Recomputed {result.days} room days: {result.snapshot_writes} snapshot writes, "
                    f"{result.aggregate_writes} aggregate writes"
                )
    except MappingRequiredError as e:
        print(f"Mapping required for: {', '.join(e.device_labels)}", file=sys.stderr)
        print("Pass --map DEVICE_ID=ROOM_KEY for each device.", file=sys.stderr)
        return 2
    except TemperatureError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await engine.dispose()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Thermotrack temperature data utilities")
    parser.add_argument("--rooms", default=None, help="Room directory JSON (defaults to ROOMS_FILE)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    preview_parser = subparsers.add_parser("preview", help="Parse files and suggest room mappings")
    preview_parser.add_argument("building", help="Building code")
    preview_parser.add_argument("paths", nargs="+", help="CSV/ZIP files or directories")
    preview_parser.add_argument("--building-name", default="", help="Building display name")

    import_parser = subparsers.add_parser("import", help="Import ready files")
    import_parser.add_argument("building", help="Building code")
    import_parser.add_argument("paths", nargs="+", help="CSV/ZIP files or directories")
    import_parser.add_argument("--building-name", default="", help="Building display name")
    import_parser.add_argument(
        "--map",
        action="append",
        default=[],
        metavar="DEVICE_ID=ROOM_KEY",
        help="Manual device mapping (repeatable)",
    )

    recompute_parser = subparsers.add_parser("recompute", help="Rebuild snapshots and aggregates")
    recompute_parser.add_argument("building", help="Building code")
    recompute_parser.add_argument("start_date", help="First local date (YYYY-MM-DD)")
    recompute_parser.add_argument("end_date", help="Last local date (YYYY-MM-DD)")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    if args.command == "import":
        try:
            args.overrides = parse_mappings(args.map)
        except argparse.ArgumentTypeError as e:
            parser.error(str(e))

    configure_logging()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
