"""Load chart unit files, parse metadata and classify auxiliary assets."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from catalog_models import ChartRecord, ChartUnit, UnitKind, utc_timestamp
from chart_parser import INI_FILE_NAME, ChartFile, ParsedMetadata, parse_chart_unit
from sng_reader import SNG_EXTENSION, read_sng


LOGGER = logging.getLogger(__name__)

LOADED_FILE_NAMES = {"notes.chart", "notes.mid", INI_FILE_NAME}

VIDEO_EXTENSIONS = [".mp4", ".avi", ".webm", ".mkv", ".mov", ".ogv"]
IMAGE_EXTENSIONS = [".png", ".jpg", ".jpeg", ".gif", ".webp"]
STEM_EXTENSIONS = [".ogg", ".mp3", ".wav", ".opus"]
STEM_NAMES = [
    "guitar",
    "bass",
    "drums",
    "drums_1",
    "drums_2",
    "drums_3",
    "drums_4",
    "vocals",
    "vocals_1",
    "vocals_2",
    "keys",
    "rhythm",
    "crowd",
]
LYRICS_FILE_NAME = "lyrics.txt"
UNKNOWN_ARTIST = "Unknown Artist"

ParseFunction = Callable[[Sequence[ChartFile]], ParsedMetadata]


@dataclass
class ChartAssets:
    video: Optional[str] = None
    background: Optional[str] = None
    album_art: Optional[str] = None
    stems: Dict[str, str] = field(default_factory=dict)
    lyrics: Optional[str] = None


def should_load(file_name: str) -> bool:
    return file_name.lower() in LOADED_FILE_NAMES


def classify_assets(file_names: Iterable[str]) -> ChartAssets:
    """Classify members by ``<prefix><ext>`` naming, ignoring case."""

    by_lower = {name.lower(): name for name in file_names}

    def find(prefix: str, extensions: List[str]) -> Optional[str]:
        for extension in extensions:
            match = by_lower.get(prefix + extension)
            if match is not None:
                return match
        return None

    stems = {}
    for stem in STEM_NAMES:
        found = find(stem, STEM_EXTENSIONS)
        if found:
            stems[stem] = found

    return ChartAssets(
        video=find("video", VIDEO_EXTENSIONS),
        background=find("background", IMAGE_EXTENSIONS),
        album_art=find("album", IMAGE_EXTENSIONS),
        stems=stems,
        lyrics=by_lower.get(LYRICS_FILE_NAME),
    )


def render_song_ini(metadata: Dict[str, str]) -> bytes:
    lines = ["[song]"]
    lines.extend(f"{key} = {value}" for key, value in metadata.items())
    return ("\n".join(lines) + "\n").encode("utf-8")


def load_unit_files(unit: ChartUnit) -> List[ChartFile]:
    """Load the members the parser needs; every other member is an empty placeholder."""

    if unit.kind is UnitKind.CONTAINER:
        contents = read_sng(unit.path, should_load)
        files = [ChartFile(file_name=name, data=data) for name, data in contents.files]
        if contents.metadata and not any(item.file_name.lower() == INI_FILE_NAME for item in files):
            files.append(ChartFile(file_name=INI_FILE_NAME, data=render_song_ini(contents.metadata)))
        return files

    files = []
    for name in unit.member_file_names:
        data = Path(unit.path, name).read_bytes() if should_load(name) else b""
        files.append(ChartFile(file_name=name, data=data))
    return files


def unit_display_name(unit: ChartUnit) -> str:
    name = os.path.basename(unit.path.rstrip("/\\"))
    if unit.kind is UnitKind.CONTAINER and name.lower().endswith(SNG_EXTENSION):
        name = name[: -len(SNG_EXTENSION)]
    return name


def build_chart_record(
    unit: ChartUnit,
    fingerprint: str,
    parse: ParseFunction = parse_chart_unit,
) -> ChartRecord:
    files = load_unit_files(unit)
    parsed = parse(files)
    assets = classify_assets(item.file_name for item in files)
    levels = parsed.levels
    tiers = parsed.tiers
    presence = parsed.presence

    chart_type = "sng" if unit.kind is UnitKind.CONTAINER else parsed.chart_type
    LOGGER.debug("Ingested %s (%s, %d members)", unit.path, chart_type, len(files))

    return ChartRecord(
        path=unit.path,
        name=parsed.name or unit_display_name(unit),
        artist=parsed.artist or UNKNOWN_ARTIST,
        album=parsed.album,
        genre=parsed.genre,
        year=parsed.year,
        charter=parsed.charter,
        diff_guitar=tiers.get("guitar"),
        diff_bass=tiers.get("bass"),
        diff_drums=tiers.get("drums"),
        diff_keys=tiers.get("keys"),
        diff_vocals=tiers.get("vocals"),
        diff_rhythm=tiers.get("rhythm"),
        diff_guitarghl=tiers.get("guitarghl"),
        diff_bassghl=tiers.get("bassghl"),
        has_guitar=presence.get("guitar", False),
        has_bass=presence.get("bass", False),
        has_drums=presence.get("drums", False),
        has_keys=presence.get("keys", False),
        has_vocals=presence.get("vocals", False),
        has_rhythm=presence.get("rhythm", False),
        has_ghl=presence.get("ghl", False),
        guitar_diffs=",".join(levels.get("guitar", [])),
        bass_diffs=",".join(levels.get("bass", [])),
        drums_diffs=",".join(levels.get("drums", [])),
        keys_diffs=",".join(levels.get("keys", [])),
        vocals_diffs=",".join(levels.get("vocals", [])),
        rhythm_diffs=",".join(levels.get("rhythm", [])),
        ghl_guitar_diffs=",".join(levels.get("ghl_guitar", [])),
        ghl_bass_diffs=",".join(levels.get("ghl_bass", [])),
        chart_type=chart_type,
        has_video=assets.video is not None,
        has_background=assets.background is not None,
        has_album_art=assets.album_art is not None,
        has_stems=bool(assets.stems),
        has_lyrics=parsed.has_lyrics or assets.lyrics is not None,
        song_length=parsed.song_length,
        preview_start=parsed.preview_start,
        fingerprint=fingerprint,
        last_scanned=utc_timestamp(),
    )
