"""Data model shared by the chart scanner, catalog store and HTTP surface."""
from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass, field, asdict, fields
from typing import Dict, List, Optional, Tuple


INSTRUMENTS = ["guitar", "bass", "drums", "keys", "vocals", "rhythm", "ghl_guitar", "ghl_bass"]

DIFFICULTY_ORDER = ["e", "m", "h", "x"]


class ChartScanError(Exception):
    pass


class UnitKind(str, enum.Enum):
    FOLDER = "folder"
    CONTAINER = "container"


class ScanPhase(str, enum.Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    SCANNING = "scanning"
    RECONCILING = "reconciling"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class ChartUnit:
    """One chart bundle found during a single scan pass."""

    path: str
    kind: UnitKind
    member_file_names: Tuple[str, ...] = ()


@dataclass
class ChartRecord:
    path: str
    name: str = ""
    artist: str = ""
    album: str = ""
    genre: str = ""
    year: Optional[int] = None
    charter: str = ""

    diff_guitar: Optional[int] = None
    diff_bass: Optional[int] = None
    diff_drums: Optional[int] = None
    diff_keys: Optional[int] = None
    diff_vocals: Optional[int] = None
    diff_rhythm: Optional[int] = None
    diff_guitarghl: Optional[int] = None
    diff_bassghl: Optional[int] = None

    has_guitar: bool = False
    has_bass: bool = False
    has_drums: bool = False
    has_keys: bool = False
    has_vocals: bool = False
    has_rhythm: bool = False
    has_ghl: bool = False

    guitar_diffs: str = ""
    bass_diffs: str = ""
    drums_diffs: str = ""
    keys_diffs: str = ""
    vocals_diffs: str = ""
    rhythm_diffs: str = ""
    ghl_guitar_diffs: str = ""
    ghl_bass_diffs: str = ""

    chart_type: Optional[str] = None

    has_video: bool = False
    has_background: bool = False
    has_album_art: bool = False
    has_stems: bool = False
    has_lyrics: bool = False

    song_length: Optional[int] = None
    preview_start: Optional[int] = None

    fingerprint: str = ""
    last_scanned: str = ""
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    def to_document(self) -> Dict[str, object]:
        document = asdict(self)
        document.pop("id", None)
        return document

    @classmethod
    def from_document(cls, document: Dict[str, object]) -> "ChartRecord":
        known = {item.name for item in fields(cls)}
        payload = {key: value for key, value in document.items() if key in known}
        return cls(**payload)


@dataclass
class ScanError:
    path: str
    error: str


@dataclass
class ScanResult:
    added: int = 0
    updated: int = 0
    removed: int = 0
    errors: List[ScanError] = field(default_factory=list)
    duration: float = 0.0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class ScanProgress:
    phase: ScanPhase
    current: int = 0
    total: int = 0
    current_path: Optional[str] = None
    message: str = ""

    def to_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        return payload


def utc_timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()
