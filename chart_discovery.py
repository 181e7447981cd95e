"""Parallel discovery of chart units below a library root."""
from __future__ import annotations

import logging
import os
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from catalog_models import ChartUnit, UnitKind
from sng_reader import SNG_EXTENSION


LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 20
DISCOVERY_WORKERS = 8

CHART_FILES = {"notes.chart", "notes.mid"}
INI_FILES = {"song.ini"}
SUPPORTED_AUDIO_EXTS = {".ogg", ".mp3", ".wav", ".opus", ".flac", ".m4a"}

SKIPPED_DIRECTORIES = {"__macosx", "$recycle.bin", "system volume information"}
SKIPPED_DIRECTORY_SUFFIXES = (".app", ".bundle")


@dataclass
class DirectoryListing:
    path: str
    files: List[str] = field(default_factory=list)
    subdirectories: List[str] = field(default_factory=list)


def is_container_file(name: str) -> bool:
    return name.lower().endswith(SNG_EXTENSION)


def looks_like_chart_folder(file_names: List[str]) -> bool:
    has_chart = False
    has_support = False
    for name in file_names:
        lowered = name.lower()
        if lowered in CHART_FILES:
            has_chart = True
        elif lowered in INI_FILES or os.path.splitext(lowered)[1] in SUPPORTED_AUDIO_EXTS:
            has_support = True
    return has_chart and has_support


def _skip_directory(name: str) -> bool:
    lowered = name.lower()
    if lowered.startswith("."):
        return True
    if lowered in SKIPPED_DIRECTORIES:
        return True
    return lowered.endswith(SKIPPED_DIRECTORY_SUFFIXES)


def list_directory(path: str) -> DirectoryListing:
    """List a directory once; unreadable directories come back empty."""

    listing = DirectoryListing(path=path)
    try:
        with os.scandir(path) as entries:
            for entry in entries:
                try:
                    if entry.is_file():
                        listing.files.append(entry.name)
                    elif entry.is_dir(follow_symlinks=False) and not _skip_directory(entry.name):
                        listing.subdirectories.append(entry.path)
                except OSError:
                    LOGGER.debug("Failed to stat %s", entry.path)
    except OSError as exc:
        LOGGER.debug("Skipping unreadable directory %s: %s", path, exc)
        return DirectoryListing(path=path)
    listing.files.sort()
    listing.subdirectories.sort()
    return listing


def folder_unit(listing: DirectoryListing) -> Optional[ChartUnit]:
    """Return the FOLDER unit for a listing, or None when it is not a leaf chart folder.

    Container files are units of their own and never count as folder members.
    """

    loose_files = [name for name in listing.files if not is_container_file(name)]
    if listing.subdirectories or not looks_like_chart_folder(loose_files):
        return None
    return ChartUnit(path=listing.path, kind=UnitKind.FOLDER, member_file_names=tuple(loose_files))


def _visit(path: str) -> Tuple[List[ChartUnit], List[str]]:
    listing = list_directory(path)
    units = [
        ChartUnit(path=os.path.join(path, name), kind=UnitKind.CONTAINER, member_file_names=(name,))
        for name in listing.files
        if is_container_file(name)
    ]
    folder = folder_unit(listing)
    if folder is not None:
        units.append(folder)
    return units, listing.subdirectories


def discover_chart_units(
    root: str,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    should_cancel: Optional[Callable[[], bool]] = None,
    executor: Optional[Executor] = None,
) -> List[ChartUnit]:
    """Walk ``root`` and return every chart unit below it, sorted by path.

    Sibling directories of one level are listed concurrently on ``executor``.
    A chart-looking folder is a unit only when it has no subdirectories;
    otherwise its subdirectories are walked instead.
    """

    owns_executor = executor is None
    if executor is None:
        executor = ThreadPoolExecutor(max_workers=DISCOVERY_WORKERS, thread_name_prefix="chart-discovery")

    def visit(path: str) -> Tuple[List[ChartUnit], List[str]]:
        if should_cancel is not None and should_cancel():
            return [], []
        return _visit(path)

    units: List[ChartUnit] = []
    frontier = [root]
    depth = 0
    try:
        while frontier and depth <= max_depth:
            if should_cancel is not None and should_cancel():
                LOGGER.debug("Discovery of %s cancelled at depth %d", root, depth)
                break
            next_frontier: List[str] = []
            for found, subdirectories in executor.map(visit, frontier):
                units.extend(found)
                next_frontier.extend(subdirectories)
            frontier = next_frontier
            depth += 1
        if frontier and depth > max_depth:
            LOGGER.warning("Stopped descending below %s at depth %d", root, max_depth)
    finally:
        if owns_executor:
            executor.shutdown(wait=True)

    units.sort(key=lambda unit: unit.path)
    return units
