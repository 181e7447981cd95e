"""Chart metadata parsing for ``song.ini``, ``.chart`` and ``.mid`` files.

``parse_chart_unit`` is a pure function over already loaded file buffers; it
never touches the filesystem. The scanner accepts any callable with the same
signature, so a different parser can be swapped in.
"""
from __future__ import annotations

import codecs
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

from catalog_models import DIFFICULTY_ORDER, INSTRUMENTS


LOGGER = logging.getLogger(__name__)

ENCODINGS = ["utf-8-sig", "cp1252", "latin-1"]

CHART_FILE_PRIORITY = ["notes.chart", "notes.mid"]

INI_FILE_NAME = "song.ini"

TIER_KEYS = {
    "guitar": "diff_guitar",
    "bass": "diff_bass",
    "drums": "diff_drums",
    "keys": "diff_keys",
    "vocals": "diff_vocals",
    "rhythm": "diff_rhythm",
    "guitarghl": "diff_guitarghl",
    "bassghl": "diff_bassghl",
}

OFFICIAL_CHARTERS = ("harmonix", "neversoft", "vicarious visions", "budcat", "freestyle games", "freestylegames")

CHART_SECTION_RE = re.compile(
    r"\[(Easy|Medium|Hard|Expert)(Single|DoubleBass|DoubleRhythm|Drums|Keyboard|GHLGuitar|GHLBass)\]",
    re.IGNORECASE,
)
CHART_LYRIC_RE = re.compile(r'=\s*E\s+"lyric\s', re.IGNORECASE)
INTEGER_RE = re.compile(r"^-?\d+$")
YEAR_RE = re.compile(r"^\s*(-?\d+)")

CHART_DIFFICULTY_CODES = {"easy": "e", "medium": "m", "hard": "h", "expert": "x"}

CHART_INSTRUMENTS = {
    "single": "guitar",
    "doublebass": "bass",
    "doublerhythm": "rhythm",
    "drums": "drums",
    "keyboard": "keys",
    "ghlguitar": "ghl_guitar",
    "ghlbass": "ghl_bass",
}

MIDI_TRACK_INSTRUMENTS = {
    "part guitar": "guitar",
    "part bass": "bass",
    "part drums": "drums",
    "part keys": "keys",
    "part vocals": "vocals",
    "part rhythm": "rhythm",
    "part guitar ghl": "ghl_guitar",
    "part bass ghl": "ghl_bass",
    "t1 gems": "guitar",
    "part real_guitar": "guitar",
    "part real_bass": "bass",
}

MIDI_NOTE_RANGES = {
    "e": (60, 64),
    "m": (72, 76),
    "h": (84, 88),
    "x": (96, 100),
}

IniValue = Union[str, int]


@dataclass(frozen=True)
class ChartFile:
    file_name: str
    data: bytes


@dataclass
class ParsedMetadata:
    name: str = ""
    artist: str = ""
    album: str = ""
    genre: str = ""
    year: Optional[int] = None
    charter: str = ""
    tiers: Dict[str, Optional[int]] = field(default_factory=dict)
    levels: Dict[str, List[str]] = field(default_factory=dict)
    presence: Dict[str, bool] = field(default_factory=dict)
    chart_type: Optional[str] = None
    has_lyrics: bool = False
    song_length: Optional[int] = None
    preview_start: Optional[int] = None


@dataclass
class MidiTrack:
    name: str
    notes: Set[int] = field(default_factory=set)
    has_lyrics: bool = False


def _empty_levels() -> Dict[str, List[str]]:
    return {instrument: [] for instrument in INSTRUMENTS}


def _sort_levels(levels: Dict[str, List[str]]) -> Dict[str, List[str]]:
    return {
        instrument: sorted(set(codes), key=DIFFICULTY_ORDER.index)
        for instrument, codes in levels.items()
    }


def decode_text(data: bytes) -> str:
    if data.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return data.decode("utf-16", errors="replace")
    for encoding in ENCODINGS:
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace")


def parse_song_ini(text: str) -> Dict[str, IniValue]:
    values: Dict[str, IniValue] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith((";", "#", "//", "[")):
            continue
        key, sep, raw_value = stripped.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        value: IniValue = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        if INTEGER_RE.match(value):
            value = int(value)
        values[key] = value
    return values


def parse_chart_text_levels(text: str) -> Dict[str, List[str]]:
    levels = _empty_levels()
    for match in CHART_SECTION_RE.finditer(text):
        code = CHART_DIFFICULTY_CODES[match.group(1).lower()]
        instrument = CHART_INSTRUMENTS[match.group(2).lower()]
        levels[instrument].append(code)
    return _sort_levels(levels)


def _read_varlen(data: bytes, pos: int, end: int) -> Tuple[int, int]:
    value = 0
    for _ in range(4):
        if pos >= end:
            break
        byte = data[pos]
        pos += 1
        value = (value << 7) | (byte & 0x7F)
        if not byte & 0x80:
            break
    return value, pos


def _scan_midi_track(data: bytes, pos: int, end: int) -> MidiTrack:
    track = MidiTrack(name="")
    running_status: Optional[int] = None
    while pos < end:
        _, pos = _read_varlen(data, pos, end)
        if pos >= end:
            break
        status = data[pos]
        if status == 0xFF:
            if pos + 1 >= end:
                break
            meta_type = data[pos + 1]
            length, pos = _read_varlen(data, pos + 2, end)
            payload = data[pos:pos + length]
            if meta_type == 0x03 and not track.name:
                track.name = payload.decode("latin-1").strip().lower()
            elif meta_type == 0x05:
                track.has_lyrics = True
            pos += length
            continue
        if status in (0xF0, 0xF7):
            length, pos = _read_varlen(data, pos + 1, end)
            pos += length
            continue
        if status & 0x80:
            running_status = status
            pos += 1
        elif running_status is None:
            break
        kind = running_status & 0xF0
        if kind in (0xC0, 0xD0):
            pos += 1
            continue
        if pos + 1 >= end:
            break
        note, velocity = data[pos], data[pos + 1]
        pos += 2
        if kind == 0x90 and velocity > 0:
            track.notes.add(note)
    return track


def iter_midi_tracks(data: bytes) -> Iterator[MidiTrack]:
    if data[:4] != b"MThd" or len(data) < 14:
        return
    pos = 8 + int.from_bytes(data[4:8], "big")
    while pos + 8 <= len(data):
        chunk_type = data[pos:pos + 4]
        length = int.from_bytes(data[pos + 4:pos + 8], "big")
        pos += 8
        if chunk_type == b"MTrk":
            yield _scan_midi_track(data, pos, min(pos + length, len(data)))
        pos += length


def parse_midi_levels(data: bytes) -> Tuple[Dict[str, List[str]], List[str], bool]:
    """Return ``(levels, track_names, has_lyrics)`` for a MIDI chart."""

    levels = _empty_levels()
    track_names: List[str] = []
    has_lyrics = False
    if data[:4] != b"MThd":
        LOGGER.debug("MIDI chart has no MThd header; reporting no difficulty levels")
    for track in iter_midi_tracks(data):
        if track.name:
            track_names.append(track.name)
        instrument = MIDI_TRACK_INSTRUMENTS.get(track.name)
        if instrument == "vocals" and track.has_lyrics:
            has_lyrics = True
        if not instrument or not track.notes:
            continue
        for code, (low, high) in MIDI_NOTE_RANGES.items():
            if any(low <= note <= high for note in track.notes):
                levels[instrument].append(code)
    return _sort_levels(levels), track_names, has_lyrics


def _text(value: Optional[IniValue]) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _int_or_none(value: Optional[IniValue]) -> Optional[int]:
    return value if isinstance(value, int) else None


def _parse_year(value: Optional[IniValue]) -> Optional[int]:
    if isinstance(value, int):
        return value
    match = YEAR_RE.match(value or "")
    return int(match.group(1)) if match else None


def _is_official_charter(charter: str) -> bool:
    lowered = charter.lower()
    return any(name in lowered for name in OFFICIAL_CHARTERS)


def _fill_gh3_levels(
    levels: Dict[str, List[str]],
    track_names: List[str],
    tiers: Dict[str, Optional[int]],
) -> Dict[str, List[str]]:
    """Assume full E/M/H/X for GH3-style MIDIs whose note data did not parse."""

    if any(len(levels[name]) >= 3 for name in ("guitar", "bass", "drums", "rhythm")):
        return levels
    filled = {instrument: list(codes) for instrument, codes in levels.items()}
    for track_name in track_names:
        instrument = MIDI_TRACK_INSTRUMENTS.get(track_name)
        if instrument and track_name not in ("part real_guitar", "part real_bass"):
            filled[instrument] = list(DIFFICULTY_ORDER)
    for instrument in ("guitar", "bass", "drums", "keys", "vocals", "rhythm"):
        tier = tiers.get(instrument)
        if tier is not None and tier >= -1 and len(filled[instrument]) < 4:
            filled[instrument] = list(DIFFICULTY_ORDER)
    return filled


def _select_chart_file(files: Sequence[ChartFile]) -> Optional[ChartFile]:
    by_name = {item.file_name.lower(): item for item in files}
    for name in CHART_FILE_PRIORITY:
        if name in by_name:
            return by_name[name]
    return None


def parse_chart_unit(files: Sequence[ChartFile]) -> ParsedMetadata:
    ini_values: Dict[str, IniValue] = {}
    for item in files:
        if item.file_name.lower() == INI_FILE_NAME and item.data:
            ini_values = parse_song_ini(decode_text(item.data))
            break

    tiers: Dict[str, Optional[int]] = {
        instrument: _int_or_none(ini_values.get(key)) for instrument, key in TIER_KEYS.items()
    }
    if tiers["drums"] is None:
        tiers["drums"] = _int_or_none(ini_values.get("diff_drums_real"))

    charter = _text(ini_values.get("charter")) or _text(ini_values.get("frets"))
    official = _is_official_charter(charter)
    gh3_style = (
        _text(ini_values.get("icon")).lower() == "gh3"
        or "multiplier_note" in ini_values
        or "gh3_unlock" in ini_values
        or official
    )

    levels = _empty_levels()
    chart_type: Optional[str] = None
    has_lyrics = False
    chart_file = _select_chart_file(files)
    if chart_file is not None:
        chart_type = "mid" if chart_file.file_name.lower().endswith(".mid") else "chart"
        if chart_type == "chart" and chart_file.data:
            text = decode_text(chart_file.data)
            levels = parse_chart_text_levels(text)
            has_lyrics = bool(CHART_LYRIC_RE.search(text))
        elif chart_type == "mid" and chart_file.data:
            levels, track_names, has_lyrics = parse_midi_levels(chart_file.data)
            if gh3_style:
                levels = _fill_gh3_levels(levels, track_names, tiers)

    def _present(instrument: str, tier_key: str) -> bool:
        tier = tiers.get(tier_key)
        return bool(levels[instrument]) or (tier is not None and tier >= -1)

    presence = {
        "guitar": _present("guitar", "guitar"),
        "bass": _present("bass", "bass"),
        "drums": _present("drums", "drums"),
        "keys": _present("keys", "keys"),
        "vocals": _present("vocals", "vocals"),
        "rhythm": _present("rhythm", "rhythm"),
        "ghl": _present("ghl_guitar", "guitarghl") or _present("ghl_bass", "bassghl"),
    }

    if official:
        for instrument in ("guitar", "bass", "drums", "keys", "vocals", "rhythm"):
            if presence[instrument]:
                levels[instrument] = list(DIFFICULTY_ORDER)
        if presence["ghl"]:
            levels["ghl_guitar"] = list(DIFFICULTY_ORDER)
            levels["ghl_bass"] = list(DIFFICULTY_ORDER)

    return ParsedMetadata(
        name=_text(ini_values.get("name")),
        artist=_text(ini_values.get("artist")),
        album=_text(ini_values.get("album")),
        genre=_text(ini_values.get("genre")),
        year=_parse_year(ini_values.get("year")),
        charter=charter,
        tiers=tiers,
        levels=levels,
        presence=presence,
        chart_type=chart_type,
        has_lyrics=has_lyrics,
        song_length=_int_or_none(ini_values.get("song_length")),
        preview_start=_int_or_none(ini_values.get("preview_start_time")),
    )
