"""Library scanning: discovery, change detection, ingestion and catalog sync."""
from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Set

from catalog_models import (
    ChartRecord,
    ChartScanError,
    ChartUnit,
    ScanError,
    ScanPhase,
    ScanProgress,
    ScanResult,
    UnitKind,
)
from catalog_store import Catalog
from chart_discovery import (
    DEFAULT_MAX_DEPTH,
    discover_chart_units,
    folder_unit,
    is_container_file,
    list_directory,
)
from chart_fingerprint import ChangeStatus, compute_fingerprint, detect_change
from chart_ingest import ParseFunction, build_chart_record
from chart_parser import parse_chart_unit


LOGGER = logging.getLogger(__name__)

# Ceiling on units in flight, independent of library size.
SCAN_CONCURRENCY = 16

PROGRESS_BATCH = 25
PROGRESS_INTERVAL = 0.25

ProgressCallback = Callable[[ScanProgress], None]


class ScanInProgressError(ChartScanError):
    pass


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _is_under(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


class ScanScheduler:
    """Runs change detection and ingestion for every unit on a bounded pool.

    One scheduler serves one scan run. ``seen_paths`` collects every unit
    path that was dispatched, including units that failed to ingest.
    """

    def __init__(
        self,
        catalog: Catalog,
        executor: ThreadPoolExecutor,
        *,
        max_workers: int,
        existing_paths: Set[str],
        existing_hashes: Dict[str, str],
        parse: ParseFunction = parse_chart_unit,
        should_cancel: Callable[[], bool] = lambda: False,
        report: Optional[ProgressCallback] = None,
    ) -> None:
        self.catalog = catalog
        self.executor = executor
        self.max_workers = max_workers
        self.existing_paths = existing_paths
        self.existing_hashes = existing_hashes
        self.parse = parse
        self.should_cancel = should_cancel
        self.report = report
        self.seen_paths: Set[str] = set()
        self.result = ScanResult()
        self._seen_lock = threading.Lock()
        self._result_lock = threading.Lock()
        self._completed = 0
        self._total = 0
        self._last_report = 0.0

    def schedule(self, units: List[ChartUnit]) -> ScanResult:
        self._total = len(units)
        slots = threading.BoundedSemaphore(self.max_workers)
        futures = []
        for unit in units:
            if self.should_cancel():
                self.result.cancelled = True
                break
            slots.acquire()
            if self.should_cancel():
                slots.release()
                self.result.cancelled = True
                break
            future = self.executor.submit(self._process, unit)
            future.add_done_callback(lambda _future: slots.release())
            futures.append(future)

        wait(futures)
        self._emit(None, force=True)
        return self.result

    def _process(self, unit: ChartUnit) -> None:
        with self._seen_lock:
            self.seen_paths.add(unit.path)
        try:
            fingerprint = compute_fingerprint(unit)
            status = detect_change(unit, fingerprint, self.existing_paths, self.existing_hashes)
            if status is ChangeStatus.UNCHANGED:
                self.catalog.touch_chart(unit.path)
            else:
                record = build_chart_record(unit, fingerprint, self.parse)
                self.catalog.upsert_chart(record)
        except Exception as exc:
            LOGGER.exception("Failed to scan chart %s", unit.path)
            with self._result_lock:
                self.result.errors.append(ScanError(path=unit.path, error=_error_message(exc)))
        else:
            with self._result_lock:
                if status is ChangeStatus.NEW:
                    self.result.added += 1
                else:
                    self.result.updated += 1
        finally:
            self._emit(unit)

    def _emit(self, unit: Optional[ChartUnit], *, force: bool = False) -> None:
        with self._result_lock:
            if unit is not None:
                self._completed += 1
            now = time.monotonic()
            due = (
                force
                or self._completed % PROGRESS_BATCH == 0
                or now - self._last_report >= PROGRESS_INTERVAL
            )
            if not due:
                return
            self._last_report = now
            progress = ScanProgress(
                phase=ScanPhase.SCANNING,
                current=self._completed,
                total=self._total,
                current_path=unit.path if unit is not None else None,
                message=f"Scanning {os.path.basename(unit.path)}" if unit is not None else "Scanning",
            )
        if self.report is not None:
            self.report(progress)


class ChartScanner:
    """Owns the scan guard, the cancellation flag and the worker pool."""

    def __init__(
        self,
        catalog: Catalog,
        *,
        parse: ParseFunction = parse_chart_unit,
        max_workers: int = SCAN_CONCURRENCY,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.catalog = catalog
        self.parse = parse
        self.max_workers = max_workers
        self.max_depth = max_depth
        self._scan_lock = threading.Lock()
        self._cancel_event = threading.Event()
        # Guards taking the scan lock together with resetting the cancel flag.
        self._cancel_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._status_lock = threading.Lock()
        self._status = ScanProgress(phase=ScanPhase.IDLE, message="Idle")

    @property
    def is_scanning(self) -> bool:
        return self._scan_lock.locked()

    @property
    def status(self) -> ScanProgress:
        with self._status_lock:
            return self._status

    def cancel_scan(self) -> bool:
        """Ask the running scan to stop; returns False when nothing is running."""

        with self._cancel_lock:
            if not self.is_scanning:
                return False
            LOGGER.info("Cancelling library scan")
            self._cancel_event.set()
            return True

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="chart-scan")
        return self._executor

    def _discard_pool(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _publish(self, progress: ScanProgress, callback: Optional[ProgressCallback]) -> None:
        with self._status_lock:
            self._status = progress
        if callback is None:
            return
        try:
            callback(progress)
        except Exception:
            LOGGER.exception("Scan progress callback failed")

    def scan_library_paths(
        self,
        paths: Iterable[str],
        progress: Optional[ProgressCallback] = None,
    ) -> ScanResult:
        """Scan every library root and reconcile the catalog.

        Raises ``ScanInProgressError`` when another scan is running on this
        scanner. Filesystem and parsing problems are returned in
        ``ScanResult.errors`` instead of being raised.
        """

        library_paths = [os.path.abspath(os.path.expanduser(str(path))) for path in paths or []]
        if not library_paths:
            raise ValueError("No library paths provided")
        with self._cancel_lock:
            if not self._scan_lock.acquire(blocking=False):
                raise ScanInProgressError("Scan already in progress")
            self._cancel_event.clear()

        started = time.perf_counter()
        try:
            try:
                result = self._scan(library_paths, lambda item: self._publish(item, progress))
            except Exception as exc:
                LOGGER.exception("Library scan failed")
                self._discard_pool()
                self._publish(ScanProgress(phase=ScanPhase.ERROR, message=_error_message(exc)), progress)
                raise
            result.duration = round(time.perf_counter() - started, 3)
            LOGGER.info(
                "Library scan finished: added=%d updated=%d removed=%d errors=%d cancelled=%s in %.3fs",
                result.added,
                result.updated,
                result.removed,
                len(result.errors),
                result.cancelled,
                result.duration,
            )
            return result
        finally:
            self._scan_lock.release()

    def _scan(self, library_paths: List[str], report: ProgressCallback) -> ScanResult:
        result = ScanResult()
        report(ScanProgress(phase=ScanPhase.DISCOVERING, message="Discovering chart folders..."))

        units: Dict[str, ChartUnit] = {}
        failed_roots: List[str] = []
        for root in library_paths:
            if self._cancel_event.is_set():
                break
            try:
                with os.scandir(root):
                    pass
            except OSError as exc:
                LOGGER.warning("Cannot access library path %s: %s", root, exc)
                result.errors.append(ScanError(path=root, error=f"Cannot access folder: {exc.strerror or exc}"))
                failed_roots.append(root)
                continue
            for unit in discover_chart_units(
                root,
                max_depth=self.max_depth,
                should_cancel=self._cancel_event.is_set,
            ):
                units.setdefault(unit.path, unit)
            report(
                ScanProgress(
                    phase=ScanPhase.DISCOVERING,
                    current=len(units),
                    current_path=root,
                    message=f"Found {len(units)} charts",
                )
            )

        if self._cancel_event.is_set():
            return self._cancelled(result, report, len(units))

        existing_paths = self.catalog.get_all_paths()
        existing_hashes = self.catalog.get_all_hashes()
        ordered = sorted(units.values(), key=lambda unit: unit.path)
        report(ScanProgress(phase=ScanPhase.SCANNING, total=len(ordered), message="Scanning charts..."))

        scheduler = ScanScheduler(
            self.catalog,
            self._pool(),
            max_workers=self.max_workers,
            existing_paths=existing_paths,
            existing_hashes=existing_hashes,
            parse=self.parse,
            should_cancel=self._cancel_event.is_set,
            report=report,
        )
        scheduled = scheduler.schedule(ordered)
        result.added = scheduled.added
        result.updated = scheduled.updated
        result.errors.extend(scheduled.errors)

        if scheduled.cancelled or self._cancel_event.is_set():
            return self._cancelled(result, report, len(ordered))

        report(ScanProgress(phase=ScanPhase.RECONCILING, current=len(ordered), total=len(ordered),
                            message="Removing missing charts..."))
        keep = set(scheduler.seen_paths)
        # Records under roots that could not be read are kept until the root is reachable again.
        for path in existing_paths:
            if any(_is_under(path, root) for root in failed_roots):
                keep.add(path)
        result.removed = self.catalog.delete_orphans(keep)
        report(ScanProgress(phase=ScanPhase.COMPLETE, current=len(ordered), total=len(ordered),
                            message="Scan complete"))
        return result

    def _cancelled(self, result: ScanResult, report: ProgressCallback, total: int) -> ScanResult:
        result.cancelled = True
        self._discard_pool()
        report(ScanProgress(phase=ScanPhase.CANCELLED, total=total, message="Scan cancelled"))
        return result

    def _unit_for_path(self, path: str) -> ChartUnit:
        if os.path.isfile(path) and is_container_file(path):
            return ChartUnit(path=path, kind=UnitKind.CONTAINER, member_file_names=(os.path.basename(path),))
        if os.path.isdir(path):
            unit = folder_unit(list_directory(path))
            if unit is not None:
                return unit
        raise ChartScanError(f"Not a chart folder or container: {path}")

    def rescan_chart(self, path: str) -> Optional[ChartRecord]:
        """Re-ingest one chart without discovery; a vanished path is removed."""

        path = os.path.abspath(os.path.expanduser(path))
        if not os.path.exists(path):
            existing = self.catalog.get_chart_by_path(path)
            if existing is not None and existing.id is not None:
                self.catalog.delete_chart(existing.id)
                LOGGER.info("Removed missing chart %s", path)
            return None

        unit = self._unit_for_path(path)
        record = build_chart_record(unit, compute_fingerprint(unit), self.parse)
        chart_id = self.catalog.upsert_chart(record)
        return self.catalog.get_chart(chart_id)
