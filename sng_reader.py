"""Streaming reader for ``.sng`` chart containers.

An ``.sng`` file bundles every file of a chart behind a small header::

    "SNGPKG" | version:u32 | xor_mask:16 bytes
    metadata_len:u64 | metadata_count:u64 | (key_len:i32 key value_len:i32 value)*
    index_len:u64 | file_count:u64 | (name_len:u8 name size:u64 offset:u64)*
    data_len:u64 | masked member payloads

All integers are little-endian. Section lengths include their count field.
Member payloads are masked per byte with ``xor_mask[i % 16] ^ (i & 0xFF)``
where ``i`` is the position inside the member.
"""
from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from catalog_models import ChartScanError


LOGGER = logging.getLogger(__name__)

SNG_MAGIC = b"SNGPKG"
SNG_EXTENSION = ".sng"

_HEADER = struct.Struct("<6sI16s")
_U64 = struct.Struct("<Q")
_I32 = struct.Struct("<i")
_U8 = struct.Struct("<B")


class SngFormatError(ChartScanError):
    pass


@dataclass(frozen=True)
class SngFileEntry:
    name: str
    size: int
    offset: int


@dataclass
class SngContents:
    metadata: Dict[str, str] = field(default_factory=dict)
    files: List[Tuple[str, bytes]] = field(default_factory=list)


def _mask_table(xor_mask: bytes) -> bytes:
    return bytes(xor_mask[index % 16] ^ index for index in range(256))


def unmask(data: bytes, xor_mask: bytes) -> bytes:
    """Apply the member mask; the operation is its own inverse."""

    length = len(data)
    if not length:
        return b""
    table = _mask_table(xor_mask)
    key = (table * (length // 256 + 1))[:length]
    value = int.from_bytes(data, "little") ^ int.from_bytes(key, "little")
    return value.to_bytes(length, "little")


class SngReader:
    """Reads the header eagerly and member payloads on demand, in order."""

    def __init__(self, path: os.PathLike | str) -> None:
        self.path = Path(path)
        self.version = 0
        self.metadata: Dict[str, str] = {}
        self.entries: List[SngFileEntry] = []
        self._xor_mask = b""
        self._handle = None
        self._position = 0
        self._file_size = 0
        self._members_started = False

    def __enter__(self) -> "SngReader":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        self._handle = self.path.open("rb")
        try:
            self._file_size = os.fstat(self._handle.fileno()).st_size
            self._read_header()
        except Exception:
            self.close()
            raise

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def _read_exact(self, size: int, what: str) -> bytes:
        data = self._handle.read(size)
        if len(data) != size:
            raise SngFormatError(f"{self.path.name}: truncated {what}")
        self._position += size
        return data

    def _read_u64(self, what: str) -> int:
        return _U64.unpack(self._read_exact(_U64.size, what))[0]

    def _decode(self, raw: bytes, what: str) -> str:
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SngFormatError(f"{self.path.name}: {what} is not valid UTF-8") from exc

    def _section_end(self, length: int, what: str) -> int:
        # The length counts from the start of the count field.
        start = self._position
        end = start + length
        if length < _U64.size or end > self._file_size:
            raise SngFormatError(f"{self.path.name}: {what} section length {length} is invalid")
        return end

    def _check_within(self, end: int, what: str) -> None:
        if self._position > end:
            raise SngFormatError(f"{self.path.name}: {what} overruns its section")

    def _read_header(self) -> None:
        magic, version, xor_mask = _HEADER.unpack(self._read_exact(_HEADER.size, "header"))
        if magic != SNG_MAGIC:
            raise SngFormatError(f"{self.path.name}: not an SNG container")
        self.version = version
        self._xor_mask = xor_mask

        metadata_end = self._section_end(self._read_u64("metadata length"), "metadata")
        metadata_count = self._read_u64("metadata count")
        for _ in range(metadata_count):
            key = self._read_string(_I32, "metadata key")
            value = self._read_string(_I32, "metadata value")
            self._check_within(metadata_end, "metadata")
            self.metadata[key] = value
        self._skip_to(metadata_end)

        index_end = self._section_end(self._read_u64("file index length"), "file index")
        file_count = self._read_u64("file count")
        entries: List[SngFileEntry] = []
        for _ in range(file_count):
            name = self._read_string(_U8, "file name")
            size = self._read_u64("file size")
            offset = self._read_u64("file offset")
            self._check_within(index_end, "file index")
            entries.append(SngFileEntry(name=name, size=size, offset=offset))
        self._skip_to(index_end)

        data_length = self._read_u64("data length")
        data_start = self._position
        if data_start + data_length > self._file_size:
            raise SngFormatError(f"{self.path.name}: data section is truncated")
        for entry in entries:
            if entry.offset < data_start or entry.offset + entry.size > data_start + data_length:
                raise SngFormatError(f"{self.path.name}: member {entry.name} lies outside the data section")
        self.entries = entries

    def _read_string(self, length_struct: struct.Struct, what: str) -> str:
        length = length_struct.unpack(self._read_exact(length_struct.size, f"{what} length"))[0]
        if length < 0 or self._position + length > self._file_size:
            raise SngFormatError(f"{self.path.name}: {what} length {length} is invalid")
        return self._decode(self._read_exact(length, what), what)

    def _skip_to(self, position: int) -> None:
        if position != self._position:
            self._handle.seek(position)
            self._position = position

    def iter_members(
        self, should_load: Optional[Callable[[str], bool]] = None
    ) -> Iterator[Tuple[SngFileEntry, bytes]]:
        """Yield ``(entry, data)`` in header order.

        Members rejected by ``should_load`` are skipped without reading and
        yielded with an empty payload. Iteration can only happen once.
        """

        if self._handle is None:
            raise RuntimeError("SngReader is not open")
        if self._members_started:
            raise RuntimeError("SNG members can only be streamed once")
        self._members_started = True

        cursor = self._position
        for entry in self.entries:
            if entry.offset < cursor:
                raise SngFormatError(f"{self.path.name}: member {entry.name} is out of order")
            cursor = entry.offset + entry.size
            if should_load is not None and not should_load(entry.name):
                yield entry, b""
                continue
            self._skip_to(entry.offset)
            raw = self._read_exact(entry.size, f"member {entry.name}")
            yield entry, unmask(raw, self._xor_mask)


def read_sng(path: os.PathLike | str, should_load: Optional[Callable[[str], bool]] = None) -> SngContents:
    with SngReader(path) as reader:
        contents = SngContents(metadata=dict(reader.metadata))
        for entry, data in reader.iter_members(should_load):
            contents.files.append((entry.name, data))
    LOGGER.debug("Read %d members from %s", len(contents.files), path)
    return contents
