import struct
import threading
from types import SimpleNamespace


class _MemoryCollection:
    def __init__(self):
        self._docs = []
        self._lock = threading.Lock()
        self._next_object_id = 1

    def create_index(self, *args, **kwargs):
        return None

    def _matches(self, doc, filter_):
        if not filter_:
            return True
        for key, expected in filter_.items():
            value = doc.get(key)
            if isinstance(expected, dict):
                if '$ne' in expected and value == expected['$ne']:
                    return False
                if '$in' in expected and value not in expected['$in']:
                    return False
                if '$nin' in expected and value in expected['$nin']:
                    return False
            else:
                if value != expected:
                    return False
        return True

    def _clone(self, value):
        if isinstance(value, dict):
            return {k: self._clone(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._clone(v) for v in value]
        return value

    def _project(self, doc, projection):
        if not projection:
            return self._clone(doc)
        projected = {'_id': doc.get('_id')}
        for key, enabled in projection.items():
            if enabled and key in doc:
                projected[key] = self._clone(doc[key])
        return projected

    def _insert(self, document):
        doc = self._clone(document)
        if '_id' not in doc:
            doc['_id'] = self._next_object_id
            self._next_object_id += 1
        self._docs.append(doc)
        return doc

    def find(self, filter_=None, projection=None):
        with self._lock:
            snapshot = [doc for doc in self._docs if self._matches(doc, filter_ or {})]
            return [self._project(doc, projection) for doc in snapshot]

    def find_one(self, filter_=None, projection=None, sort=None):
        with self._lock:
            matches = [doc for doc in self._docs if self._matches(doc, filter_ or {})]
            if sort:
                for key, direction in reversed(sort):
                    matches.sort(key=lambda doc, k=key: (doc.get(k) is not None, doc.get(k) or 0),
                                 reverse=direction < 0)
            if not matches:
                return None
            return self._project(matches[0], projection)

    def find_one_and_update(self, filter_, update, upsert=False, return_document=None):
        with self._lock:
            doc = next((item for item in self._docs if self._matches(item, filter_)), None)
            if doc is None:
                if not upsert:
                    return None
                base = {key: value for key, value in filter_.items() if not isinstance(value, dict)}
                base.update(update.get('$setOnInsert', {}))
                doc = self._insert(base)
            doc.update(self._clone(update.get('$set', {})))
            return self._clone(doc)

    def update_one(self, filter_, update, upsert=False):
        with self._lock:
            for doc in self._docs:
                if self._matches(doc, filter_):
                    doc.update(self._clone(update.get('$set', {})))
                    return SimpleNamespace(matched_count=1)
            if upsert:
                base = {key: value for key, value in filter_.items() if not isinstance(value, dict)}
                base.update(update.get('$set', {}))
                self._insert(base)
            return SimpleNamespace(matched_count=0)

    def insert_one(self, document):
        with self._lock:
            self._insert(document)

    def delete_many(self, filter_):
        with self._lock:
            before = len(self._docs)
            self._docs = [doc for doc in self._docs if not self._matches(doc, filter_ or {})]
            return SimpleNamespace(deleted_count=before - len(self._docs))


class DummyDB:
    def __init__(self):
        self.charts = _MemoryCollection()
        self.seq = _MemoryCollection()
        self.ping_ok = True

    def command(self, name):
        if not self.ping_ok:
            raise RuntimeError('mongo unavailable')
        return {'ok': 1}


DEFAULT_XOR_MASK = bytes(range(16, 32))


def mask_member(data, xor_mask=DEFAULT_XOR_MASK):
    return bytes(byte ^ xor_mask[index % 16] ^ (index & 0xFF) for index, byte in enumerate(data))


def build_sng(files, metadata=None, xor_mask=DEFAULT_XOR_MASK, version=1, reverse_payload=False):
    """Serialise ``files`` (a list of ``(name, bytes)``) into an SNG container.

    ``reverse_payload`` stores member data in the opposite order of the index.
    """

    metadata = metadata or {}
    metadata_body = struct.pack('<Q', len(metadata))
    for key, value in metadata.items():
        key_bytes = key.encode('utf-8')
        value_bytes = str(value).encode('utf-8')
        metadata_body += struct.pack('<i', len(key_bytes)) + key_bytes
        metadata_body += struct.pack('<i', len(value_bytes)) + value_bytes

    header = b'SNGPKG' + struct.pack('<I', version) + xor_mask
    header += struct.pack('<Q', len(metadata_body)) + metadata_body

    index_entry_sizes = sum(1 + len(name.encode('utf-8')) + 16 for name, _ in files)
    index_length = 8 + index_entry_sizes
    data_start = len(header) + 8 + index_length + 8

    offsets = {}
    payload = b''
    offset = data_start
    for position in (reversed(range(len(files))) if reverse_payload else range(len(files))):
        data = files[position][1]
        offsets[position] = offset
        payload += mask_member(data, xor_mask)
        offset += len(data)

    index_body = struct.pack('<Q', len(files))
    for position, (name, data) in enumerate(files):
        name_bytes = name.encode('utf-8')
        index_body += struct.pack('<B', len(name_bytes)) + name_bytes
        index_body += struct.pack('<QQ', len(data), offsets[position])

    return header + struct.pack('<Q', index_length) + index_body + struct.pack('<Q', len(payload)) + payload
