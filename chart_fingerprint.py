"""Cheap change detection for chart units.

A unit's fingerprint is derived from file names, sizes and modification
times only. A member rewritten with the same size inside the filesystem's
timestamp resolution keeps its fingerprint; scanning never hashes content.
"""
from __future__ import annotations

import enum
import hashlib
import os
from typing import Dict, Iterable, Set

from catalog_models import ChartUnit, UnitKind


class ChangeStatus(str, enum.Enum):
    UNCHANGED = "unchanged"
    NEW = "new"
    CHANGED = "changed"


def md5_text(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def _mtime_ns(stat_result: os.stat_result) -> int:
    return getattr(stat_result, "st_mtime_ns", int(stat_result.st_mtime * 1_000_000_000))


def container_fingerprint(path: str) -> str:
    stat_result = os.stat(path)
    return md5_text(f"{stat_result.st_size}:{_mtime_ns(stat_result)}")


def folder_fingerprint(path: str, member_names: Iterable[str]) -> str:
    digest = hashlib.md5()
    for name in sorted(member_names):
        stat_result = os.stat(os.path.join(path, name))
        digest.update(f"{name}:{stat_result.st_size}:{_mtime_ns(stat_result)}\n".encode("utf-8"))
    return digest.hexdigest()


def compute_fingerprint(unit: ChartUnit) -> str:
    if unit.kind is UnitKind.CONTAINER:
        return container_fingerprint(unit.path)
    return folder_fingerprint(unit.path, unit.member_file_names)


def detect_change(
    unit: ChartUnit,
    fingerprint: str,
    existing_paths: Set[str],
    existing_hashes: Dict[str, str],
) -> ChangeStatus:
    if unit.path not in existing_paths:
        return ChangeStatus.NEW
    if existing_hashes.get(unit.path) == fingerprint:
        return ChangeStatus.UNCHANGED
    return ChangeStatus.CHANGED
