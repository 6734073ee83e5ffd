"""Room directory used to resolve sensors to physical rooms.

Building and room canonicalization belongs to the facilities directory; this
module only consumes its output. A RoomResolver is built once (from records
or a JSON export of the directory) and is read-only afterwards. Callers
construct it and pass it in; there is no module-level instance.
"""

import json
import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable

import structlog

from thermotrack.services.temperature_matcher import normalize_match_text

logger = structlog.get_logger()


class RoomDirectoryError(Exception):
    """Room directory could not be loaded."""
    pass


@dataclass(frozen=True)
class Room:
    """A room as published by the facilities directory."""

    key: str
    building_code: str
    building_name: str = ""
    room_number: str = ""
    name: str = ""
    space_type: str = ""

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        label = f"{self.building_name or self.building_code} {self.room_number}".strip()
        return label or self.key


def _room_sort_key(room: Room) -> tuple:
    match = re.match(r"\d+", room.room_number or "")
    number = int(match.group(0)) if match else float("inf")
    return (number, room.room_number, room.key)


class RoomResolver:
    """Immutable lookup over the room directory."""

    def __init__(self, rooms: Iterable[Room]):
        by_key: dict[str, Room] = {}
        by_building: dict[str, list[Room]] = {}
        by_label: dict[str, str] = {}

        for room in rooms:
            if not room.key or room.key in by_key:
                continue
            by_key[room.key] = room
            for building in {room.building_code.lower(), room.building_name.lower()}:
                if building:
                    by_building.setdefault(building, []).append(room)
            by_label.setdefault(normalize_match_text(room.display_name), room.key)

        self._by_key = MappingProxyType(by_key)
        self._by_building = MappingProxyType(
            {building: tuple(sorted(items, key=_room_sort_key)) for building, items in by_building.items()}
        )
        self._by_label = MappingProxyType(by_label)

    @classmethod
    def from_records(cls, records: Iterable[dict[str, Any]]) -> "RoomResolver":
        """Build from directory records (``key``/``id``, ``building_code``, ...)."""
        rooms = []
        for record in records:
            key = record.get("key") or record.get("space_key") or record.get("id") or ""
            rooms.append(
                Room(
                    key=str(key),
                    building_code=str(record.get("building_code") or record.get("building") or ""),
                    building_name=str(record.get("building_name") or ""),
                    room_number=str(record.get("room_number") or record.get("space_number") or ""),
                    name=str(record.get("name") or record.get("display_name") or ""),
                    space_type=str(record.get("space_type") or ""),
                )
            )
        return cls(rooms)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "RoomResolver":
        """Load a JSON array of room records."""
        try:
            records = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise RoomDirectoryError(f"Cannot load room directory {path}: {e}") from e
        if not isinstance(records, list):
            raise RoomDirectoryError(f"Room directory {path} must be a JSON array")
        resolver = cls.from_records(records)
        logger.info("Room directory loaded", path=str(path), rooms=len(resolver))
        return resolver

    def __len__(self) -> int:
        return len(self._by_key)

    def get(self, room_key: str) -> Room | None:
        return self._by_key.get(room_key)

    def resolve_room(self, label: str) -> str | None:
        """Return the room key for a key or display label, if known."""
        if not label:
            return None
        if label in self._by_key:
            return label
        return self._by_label.get(normalize_match_text(label))

    def list_rooms(self, building: str) -> list[Room]:
        """Rooms of a building (by code or name), sorted by room number."""
        return list(self._by_building.get((building or "").lower(), ()))

    def display_name(self, room_key: str) -> str:
        room = self._by_key.get(room_key)
        return room.display_name if room else room_key
