"""Catalog contract used by the scanner and its MongoDB implementation."""
from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Iterable, List, Optional, Protocol, Set

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from catalog_models import ChartRecord, utc_timestamp


LOGGER = logging.getLogger(__name__)

ORPHAN_DELETE_BATCH = 500
UPSERT_ATTEMPTS = 3


class Catalog(Protocol):
    def get_all_paths(self) -> Set[str]: ...

    def get_all_hashes(self) -> Dict[str, str]: ...

    def upsert_chart(self, record: ChartRecord) -> int: ...

    def touch_chart(self, path: str) -> None: ...

    def delete_orphans(self, seen_paths: Set[str]) -> int: ...

    def get_chart(self, chart_id: int) -> Optional[ChartRecord]: ...

    def get_chart_by_path(self, path: str) -> Optional[ChartRecord]: ...

    def delete_chart(self, chart_id: int) -> bool: ...


class MongoCatalog:
    """Stores one document per chart path in the ``charts`` collection.

    Numeric ids come from the ``seq`` collection (``{'name': 'charts'}``) and
    are never reused.
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self.charts = db.charts
        self._id_lock = threading.Lock()
        self._next_id: Optional[int] = None
        for key in ('path', 'id'):
            try:
                self.charts.create_index(key, unique=True)
            except PyMongoError:  # pragma: no cover - exercised with real MongoDB
                LOGGER.debug('Failed to ensure unique %s index for charts collection', key)

    def _ensure_sequence(self) -> None:
        if self._next_id is not None:
            return
        current = 0
        seq = self.db.seq.find_one({'name': 'charts'})
        if seq and isinstance(seq.get('value'), int):
            current = max(current, seq['value'])
        max_chart = self.charts.find_one({}, {'id': 1}, sort=[('id', -1)])
        if max_chart and isinstance(max_chart.get('id'), int):
            current = max(current, max_chart['id'])
        self._next_id = current + 1

    def _allocate_id(self) -> int:
        with self._id_lock:
            self._ensure_sequence()
            assert self._next_id is not None
            chart_id = self._next_id
            self._next_id += 1
            self.db.seq.update_one({'name': 'charts'}, {'$set': {'value': chart_id}}, upsert=True)
            return chart_id

    def get_all_paths(self) -> Set[str]:
        return {
            doc['path'] for doc in self.charts.find({}, {'path': 1})
            if isinstance(doc.get('path'), str)
        }

    def get_all_hashes(self) -> Dict[str, str]:
        hashes: Dict[str, str] = {}
        for doc in self.charts.find({}, {'path': 1, 'fingerprint': 1}):
            path = doc.get('path')
            fingerprint = doc.get('fingerprint')
            if isinstance(path, str) and isinstance(fingerprint, str):
                hashes[path] = fingerprint
        return hashes

    def upsert_chart(self, record: ChartRecord) -> int:
        document = record.to_document()
        update: Dict[str, object] = {'$set': document}
        existing = self.charts.find_one({'path': record.path}, {'id': 1})
        if existing is None or existing.get('id') is None:
            update['$setOnInsert'] = {'id': self._allocate_id()}

        result = None
        for attempt in range(UPSERT_ATTEMPTS):
            try:
                result = self.charts.find_one_and_update(
                    {'path': record.path},
                    update,
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
                break
            except DuplicateKeyError:
                if attempt == UPSERT_ATTEMPTS - 1:
                    raise
                LOGGER.debug('Duplicate key while upserting %s; retrying', record.path)
                time.sleep(0.05 * (attempt + 1))

        if result is None or result.get('id') is None:
            chart_id = self._allocate_id()
            self.charts.update_one({'path': record.path}, {'$set': {'id': chart_id}})
            return chart_id
        return int(result['id'])

    def touch_chart(self, path: str) -> None:
        self.charts.update_one({'path': path}, {'$set': {'last_scanned': utc_timestamp()}})

    def delete_orphans(self, seen_paths: Set[str]) -> int:
        orphans = sorted(self.get_all_paths() - set(seen_paths))
        removed = 0
        for batch in _batched(orphans, ORPHAN_DELETE_BATCH):
            result = self.charts.delete_many({'path': {'$in': batch}})
            removed += result.deleted_count
        if removed:
            LOGGER.info('Removed %d orphaned charts', removed)
        return removed

    def get_chart(self, chart_id: int) -> Optional[ChartRecord]:
        doc = self.charts.find_one({'id': chart_id})
        return ChartRecord.from_document(doc) if doc else None

    def get_chart_by_path(self, path: str) -> Optional[ChartRecord]:
        doc = self.charts.find_one({'path': path})
        return ChartRecord.from_document(doc) if doc else None

    def delete_chart(self, chart_id: int) -> bool:
        result = self.charts.delete_many({'id': chart_id})
        return result.deleted_count > 0


def _batched(items: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]
