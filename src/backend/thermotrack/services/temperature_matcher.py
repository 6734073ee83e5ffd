"""Device identity and device-label to room matching.

A device is identified by the label embedded in its export filename. When a
device has no stored mapping, its label is scored against the building's
rooms with an ordered list of named rules. Room-number evidence outranks
loose label overlap, and a tie for the best score is reported with reduced
confidence instead of silently picking one room.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable

if TYPE_CHECKING:
    from thermotrack.models.temperature_device import TemperatureDevice
    from thermotrack.services.room_resolver import Room

MAX_DEVICE_ID_LENGTH = 120
TRUNCATED_DEVICE_ID_LENGTH = 90
TIE_CONFIDENCE_CAP = 0.65

_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]+")
_WHITESPACE_RE = re.compile(r"\s+")
_DECIMAL_ROOM_RE = re.compile(r"\b\d{2,4}\.\d{1,3}[A-Za-z]?\b", re.ASCII)
_PLAIN_ROOM_RE = re.compile(r"\b\d{2,4}[A-Za-z]?\b", re.ASCII)
_PREFIXED_ROOM_RE = re.compile(r"\b[A-Za-z]{1,3}\d{2,4}\b", re.ASCII)
_BRACKET_SUFFIX_RE = re.compile(r"\s*\[\d+\]$")
_PAREN_SUFFIX_RE = re.compile(r"\s*\(\d+\)$")
_EXPORT_SUFFIX_RE = re.compile(r"^(.*?)(?:\s+export\s+|export_)", re.IGNORECASE)


# ==================== Identity ====================


def parse_device_label_from_filename(filename: str = "") -> str:
    """Strip path, extension, download counters and export suffix from a filename."""
    base_name = re.sub(r"^.*[\\/]", "", filename or "")
    base_name = re.sub(r"\.[^.]+$", "", base_name)
    trimmed = _PAREN_SUFFIX_RE.sub("", _BRACKET_SUFFIX_RE.sub("", base_name))

    export_index = trimmed.lower().rfind("_export_")
    if export_index != -1:
        return trimmed[:export_index].strip()

    match = _EXPORT_SUFFIX_RE.match(trimmed)
    if match and match.group(1):
        return match.group(1).strip()
    return trimmed.strip()


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", (value or "").lower()).strip("_")


def to_building_key(building: str = "") -> str:
    return _slug(building) or "unknown"


def _to_base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, remainder = divmod(number, 36)
        out.append(digits[remainder])
    return "".join(reversed(out))


def simple_hash(value: str) -> str:
    """31-multiplier rolling hash over UTF-16 code units, 32-bit signed, base 36."""
    hash_value = 0
    encoded = value.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        code_unit = encoded[i] | (encoded[i + 1] << 8)
        hash_value = (hash_value * 31 + code_unit) & 0xFFFFFFFF
    if hash_value >= 0x80000000:
        hash_value -= 0x100000000
    return _to_base36(abs(hash_value))


def to_device_id(building: str = "", device_label: str = "") -> str:
    """Stable device id from building and label; long ids get a hash suffix."""
    base = f"{to_building_key(building)}__{_slug(device_label) or 'device'}"
    if len(base) <= MAX_DEVICE_ID_LENGTH:
        return base
    return f"{base[:TRUNCATED_DEVICE_ID_LENGTH]}__{simple_hash(base)}"


def to_device_day_id(device_id: str, date_local: str) -> str:
    return f"{device_id}__{date_local}"


def to_snapshot_id(building: str, room_key: str, date_local: str, snapshot_id: str) -> str:
    return f"{to_building_key(building)}__{room_key}__{date_local}__{snapshot_id}"


def to_aggregate_id(building: str, room_key: str, date_local: str) -> str:
    return f"{to_building_key(building)}__{room_key}__{date_local}"


def to_import_id(building: str, file_hash: str) -> str:
    return f"{to_building_key(building)}__{file_hash}"


# ==================== Text normalization ====================


def normalize_match_text(value: str = "") -> str:
    """Accent-fold, replace punctuation with spaces, collapse and lowercase."""
    decomposed = unicodedata.normalize("NFKD", value or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    text = _NON_ALNUM_RE.sub(" ", stripped)
    return _WHITESPACE_RE.sub(" ", text).strip().lower()


def extract_room_tokens(label: str = "") -> list[str]:
    """Room-like tokens in first-seen order: decimals, plain numbers, prefixed codes."""
    normalized = (label or "").replace(",", " ")
    tokens: dict[str, None] = {}
    for pattern in (_DECIMAL_ROOM_RE, _PLAIN_ROOM_RE, _PREFIXED_ROOM_RE):
        for match in pattern.findall(normalized):
            tokens.setdefault(match, None)
    return list(tokens)


def normalize_room_number(value: str = "") -> str:
    return re.sub(r"\s+", "", value or "").upper()


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value)


# ==================== Matching ====================


@dataclass(frozen=True)
class MatchContext:
    """Normalized forms of one device label."""

    label_normalized: str
    label_tokens: tuple[str, ...]

    @classmethod
    def from_label(cls, label: str) -> MatchContext:
        return cls(
            label_normalized=normalize_match_text(label),
            label_tokens=tuple(normalize_room_number(t) for t in extract_room_tokens(label)),
        )


@dataclass(frozen=True)
class RoomCandidate:
    """Normalized forms of one room."""

    key: str
    room_number: str
    room_label: str


@dataclass(frozen=True)
class MatchRule:
    """One named scoring rule.

    ``exclusive`` stops evaluation of later rules when this one matches;
    ``only_if_unscored`` skips the rule once an earlier rule scored.
    """

    name: str
    score: float
    applies: Callable[[MatchContext, RoomCandidate], bool]
    exclusive: bool = False
    only_if_unscored: bool = False


def _exact_room_number(ctx: MatchContext, room: RoomCandidate) -> bool:
    return bool(room.room_number) and room.room_number in ctx.label_tokens


def _same_room_digits(ctx: MatchContext, room: RoomCandidate) -> bool:
    digits = _digits(room.room_number)
    return bool(digits) and any(_digits(token) == digits for token in ctx.label_tokens)


def _room_number_in_text(ctx: MatchContext, room: RoomCandidate) -> bool:
    return bool(room.room_number) and room.room_number.lower() in ctx.label_normalized


def _room_label_in_text(ctx: MatchContext, room: RoomCandidate) -> bool:
    return bool(room.room_label) and room.room_label in ctx.label_normalized


MATCH_RULES: tuple[MatchRule, ...] = (
    MatchRule("exact_room_number", 0.95, _exact_room_number, exclusive=True),
    MatchRule("room_number", 0.85, _same_room_digits),
    MatchRule("room_number_text", 0.75, _room_number_in_text),
    MatchRule("label_match", 0.8, _room_label_in_text, only_if_unscored=True),
)


@dataclass(frozen=True)
class MatchSuggestion:
    """Suggested room for a device label."""

    room_key: str
    confidence: float
    method: str

    @property
    def matched(self) -> bool:
        return bool(self.room_key)


NO_MATCH = MatchSuggestion(room_key="", confidence=0.0, method="none")


def score_room(
    ctx: MatchContext,
    room: RoomCandidate,
    rules: Iterable[MatchRule] = MATCH_RULES,
) -> tuple[float, str]:
    """Apply rules in order; the first rule to reach the top score names the method."""
    score = 0.0
    method = ""
    for rule in rules:
        if rule.only_if_unscored and score:
            continue
        if not rule.applies(ctx, room):
            continue
        if rule.score > score:
            score = rule.score
        method = method or rule.name
        if rule.exclusive:
            break
    return score, method


def suggest_room_match(
    label: str,
    rooms: Iterable[Room],
    rules: Iterable[MatchRule] = MATCH_RULES,
) -> MatchSuggestion:
    """Best-scoring room for ``label``; ties are capped at TIE_CONFIDENCE_CAP."""
    rules = tuple(rules)
    candidates = [
        RoomCandidate(
            key=room.key,
            room_number=normalize_room_number(room.room_number),
            room_label=normalize_match_text(room.display_name),
        )
        for room in rooms
    ]
    if not label or not candidates:
        return NO_MATCH

    ctx = MatchContext.from_label(label)
    best: tuple[RoomCandidate, float, str] | None = None
    tied = False

    for room in candidates:
        score, method = score_room(ctx, room, rules)
        if not score:
            continue
        if best is None or score > best[1]:
            best = (room, score, method)
            tied = False
        elif score == best[1]:
            tied = True

    if best is None:
        return NO_MATCH

    room, score, method = best
    confidence = min(score, TIE_CONFIDENCE_CAP) if tied else score
    return MatchSuggestion(room_key=room.key, confidence=confidence, method=method)


def resolve_device_mapping(
    device: TemperatureDevice | None,
    label: str,
    rooms: Iterable[Room],
) -> MatchSuggestion:
    """Reuse a stored mapping when present; otherwise score the label once."""
    if device is not None and device.room_key:
        if device.mapping_manual:
            confidence = 1.0
        elif device.mapping_confidence is not None:
            confidence = device.mapping_confidence
        else:
            confidence = 1.0
        return MatchSuggestion(
            room_key=device.room_key,
            confidence=confidence,
            method=device.mapping_method or "existing",
        )
    return suggest_room_match(label, rooms)
