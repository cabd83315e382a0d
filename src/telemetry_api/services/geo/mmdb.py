"""Reader for the MaxMind DB (MMDB) binary geolocation format.

An MMDB file has three parts:

* a binary search tree keyed by the bits of an IP address,
* a data section of self-describing values that tree leaves point into,
* a metadata map found by scanning backwards for a fixed marker.

Offsets handed to :class:`Decoder` are absolute positions in the file
buffer. Pointers stored in the data are relative to a base supplied at
construction (the start of the data section, or the start of the metadata
block), so the decoder never needs a cursor of its own.
"""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import GeoDatabaseError, InvalidDatabaseError

METADATA_MARKER = b"\xab\xcd\xefMaxMind.com"
METADATA_SEARCH_WINDOW = 128 * 1024
DATA_SECTION_SEPARATOR = 16

TYPE_EXTENDED = 0
TYPE_POINTER = 1
TYPE_UTF8 = 2
TYPE_DOUBLE = 3
TYPE_BYTES = 4
TYPE_UINT16 = 5
TYPE_UINT32 = 6
TYPE_MAP = 7
TYPE_INT32 = 8
TYPE_UINT64 = 9
TYPE_UINT128 = 10
TYPE_ARRAY = 11
TYPE_BOOLEAN = 14
TYPE_FLOAT = 15

_UNSIGNED_WIDTHS = {TYPE_UINT16: 2, TYPE_UINT32: 4, TYPE_UINT64: 8, TYPE_UINT128: 16}
_POINTER_BASES = (0, 2048, 526336, 0)
_SIZE_BASES = {29: 29, 30: 285, 31: 65821}

# Limits for one top-level decode. A City record nests under ten levels and
# holds a few hundred values. Pointers are free; the values they resolve to are not.
MAX_DECODE_DEPTH = 128
MAX_DECODED_VALUES = 1 << 16
MAX_DECODED_PAYLOAD_BYTES = 1 << 21


@dataclass(slots=True)
class _DecodeBudget:
    values: int
    payload_bytes: int

    def spend_value(self, offset: int) -> None:
        self.values -= 1
        if self.values < 0:
            raise InvalidDatabaseError(f"Data section exceeds its value budget near offset {offset}")

    def spend_payload(self, size: int, offset: int) -> None:
        self.payload_bytes -= size
        if self.payload_bytes < 0:
            raise InvalidDatabaseError(f"Data section exceeds its payload budget near offset {offset}")


class Decoder:
    """Pure offset -> (value, next_offset) decoder for the MMDB data format."""

    def __init__(
        self,
        buffer: bytes,
        *,
        pointer_base: int = 0,
        max_depth: int = MAX_DECODE_DEPTH,
        max_values: int = MAX_DECODED_VALUES,
        max_payload_bytes: int = MAX_DECODED_PAYLOAD_BYTES,
    ) -> None:
        self._buffer = buffer
        self._pointer_base = pointer_base
        self._max_depth = max_depth
        self._max_values = max_values
        self._max_payload_bytes = max_payload_bytes

    def decode(self, offset: int) -> tuple[Any, int]:
        return self._decode(offset, 0, _DecodeBudget(self._max_values, self._max_payload_bytes))

    def _decode(self, offset: int, depth: int, budget: _DecodeBudget) -> tuple[Any, int]:
        if depth > self._max_depth:
            raise InvalidDatabaseError(f"Data nested deeper than {self._max_depth} levels at offset {offset}")
        ctrl, offset = self._read_byte(offset)
        type_code = ctrl >> 5

        if type_code == TYPE_POINTER:
            target, next_offset = self._decode_pointer(ctrl, offset)
            target_ctrl, _ = self._read_byte(target)
            if target_ctrl >> 5 == TYPE_POINTER:
                raise InvalidDatabaseError(f"Pointer at offset {offset - 1} points to another pointer")
            value, _ = self._decode(target, depth + 1, budget)
            # The caller resumes after the pointer, not after the pointed-to value.
            return value, next_offset

        budget.spend_value(offset - 1)
        if type_code == TYPE_EXTENDED:
            extended, offset = self._read_byte(offset)
            type_code = extended + 7
            if type_code < 8:
                raise InvalidDatabaseError(f"Invalid extended type {type_code} at offset {offset - 1}")

        size, offset = self._decode_size(ctrl, offset)

        if type_code == TYPE_UTF8:
            budget.spend_payload(size, offset)
            raw, offset = self._read(offset, size)
            try:
                return raw.decode("utf-8"), offset
            except UnicodeDecodeError as exc:
                raise InvalidDatabaseError(f"Invalid UTF-8 string at offset {offset - size}") from exc
        if type_code == TYPE_DOUBLE:
            if size != 8:
                raise InvalidDatabaseError(f"Invalid double size {size}")
            raw, offset = self._read(offset, size)
            return struct.unpack(">d", raw)[0], offset
        if type_code == TYPE_FLOAT:
            if size != 4:
                raise InvalidDatabaseError(f"Invalid float size {size}")
            raw, offset = self._read(offset, size)
            return struct.unpack(">f", raw)[0], offset
        if type_code == TYPE_BYTES:
            budget.spend_payload(size, offset)
            return self._read(offset, size)
        if type_code in _UNSIGNED_WIDTHS:
            if size > _UNSIGNED_WIDTHS[type_code]:
                raise InvalidDatabaseError(f"Unsigned integer of {size} bytes exceeds type width")
            raw, offset = self._read(offset, size)
            return int.from_bytes(raw, "big"), offset
        if type_code == TYPE_INT32:
            if size > 4:
                raise InvalidDatabaseError(f"Invalid int32 size {size}")
            raw, offset = self._read(offset, size)
            return int.from_bytes(raw.rjust(4, b"\x00"), "big", signed=True), offset
        if type_code == TYPE_MAP:
            return self._decode_map(size, offset, depth, budget)
        if type_code == TYPE_ARRAY:
            return self._decode_array(size, offset, depth, budget)
        if type_code == TYPE_BOOLEAN:
            if size > 1:
                raise InvalidDatabaseError(f"Invalid boolean value {size}")
            return bool(size), offset

        raise InvalidDatabaseError(f"Unknown data type {type_code} at offset {offset}")

    def _decode_map(self, size: int, offset: int, depth: int, budget: _DecodeBudget) -> tuple[dict[str, Any], int]:
        result: dict[str, Any] = {}
        for _ in range(size):
            key, offset = self._decode(offset, depth + 1, budget)
            if not isinstance(key, str):
                raise InvalidDatabaseError(f"Map key must be a string, got {type(key).__name__}")
            value, offset = self._decode(offset, depth + 1, budget)
            result[key] = value
        return result, offset

    def _decode_array(self, size: int, offset: int, depth: int, budget: _DecodeBudget) -> tuple[list[Any], int]:
        items: list[Any] = []
        for _ in range(size):
            value, offset = self._decode(offset, depth + 1, budget)
            items.append(value)
        return items, offset

    def _decode_pointer(self, ctrl: int, offset: int) -> tuple[int, int]:
        size_class = (ctrl >> 3) & 0x3
        raw, next_offset = self._read(offset, size_class + 1)
        if size_class == 3:
            pointer = int.from_bytes(raw, "big")
        else:
            pointer = ((ctrl & 0x7) << (8 * (size_class + 1))) | int.from_bytes(raw, "big")
        pointer += _POINTER_BASES[size_class]
        return self._pointer_base + pointer, next_offset

    def _decode_size(self, ctrl: int, offset: int) -> tuple[int, int]:
        size = ctrl & 0x1F
        if size < 29:
            return size, offset
        raw, offset = self._read(offset, size - 28)
        return _SIZE_BASES[size] + int.from_bytes(raw, "big"), offset

    def _read_byte(self, offset: int) -> tuple[int, int]:
        if offset < 0 or offset >= len(self._buffer):
            raise InvalidDatabaseError(f"Read past end of database at offset {offset}")
        return self._buffer[offset], offset + 1

    def _read(self, offset: int, length: int) -> tuple[bytes, int]:
        end = offset + length
        if offset < 0 or end > len(self._buffer):
            raise InvalidDatabaseError(f"Truncated read of {length} bytes at offset {offset}")
        return bytes(self._buffer[offset:end]), end


@dataclass(slots=True)
class Metadata:
    """Subset of the metadata map needed to walk the search tree."""

    node_count: int
    record_size: int
    ip_version: int
    database_type: str = ""
    languages: list[str] = field(default_factory=list)
    build_epoch: int | None = None

    @property
    def search_tree_size(self) -> int:
        return self.node_count * self.record_size // 4


def _parse_metadata(buffer: bytes) -> tuple[Metadata, int]:
    window_start = max(0, len(buffer) - METADATA_SEARCH_WINDOW)
    marker_at = buffer.rfind(METADATA_MARKER, window_start)
    if marker_at == -1:
        raise InvalidDatabaseError("Metadata marker not found; not a MaxMind DB file")

    start = marker_at + len(METADATA_MARKER)
    raw, _ = Decoder(buffer, pointer_base=start).decode(start)
    if not isinstance(raw, dict):
        raise InvalidDatabaseError("Metadata section is not a map")

    node_count = raw.get("node_count")
    record_size = raw.get("record_size")
    ip_version = raw.get("ip_version")
    if not isinstance(node_count, int) or node_count <= 0:
        raise InvalidDatabaseError(f"Invalid node_count {node_count!r}")
    if record_size not in (24, 28, 32):
        raise InvalidDatabaseError(f"Unsupported record size {record_size!r}")
    if ip_version not in (4, 6):
        raise InvalidDatabaseError(f"Unsupported ip_version {ip_version!r}")

    languages = raw.get("languages")
    metadata = Metadata(
        node_count=node_count,
        record_size=record_size,
        ip_version=ip_version,
        database_type=str(raw.get("database_type") or ""),
        languages=[str(item) for item in languages] if isinstance(languages, list) else [],
        build_epoch=raw.get("build_epoch") if isinstance(raw.get("build_epoch"), int) else None,
    )
    return metadata, marker_at


class MMDBReader:
    """Look up IP addresses in an in-memory MMDB buffer."""

    def __init__(self, buffer: bytes) -> None:
        self._buffer = buffer
        self.metadata, marker_at = _parse_metadata(buffer)
        self._data_section_start = self.metadata.search_tree_size + DATA_SECTION_SEPARATOR
        if self._data_section_start > marker_at:
            raise InvalidDatabaseError("Search tree overlaps the metadata section")
        self._data_section_size = marker_at - self._data_section_start
        self._decoder = Decoder(buffer, pointer_base=self._data_section_start)
        self._ipv4_start: int | None = None

    @classmethod
    def open(cls, path: str | Path) -> "MMDBReader":
        try:
            buffer = Path(path).read_bytes()
        except OSError as exc:
            raise GeoDatabaseError(f"Cannot read geolocation database {path}: {exc}") from exc
        return cls(buffer)

    def lookup(self, ip: str) -> dict[str, Any] | None:
        record, _ = self.lookup_with_prefix_len(ip)
        return record

    def lookup_with_prefix_len(self, ip: str) -> tuple[dict[str, Any] | None, int]:
        """Return the record for ``ip`` and the depth at which the walk stopped.

        Raises ``ValueError`` for an unparseable address or an IPv6 address
        against an IPv4-only database.
        """

        address = ipaddress.ip_address(ip)
        if address.version == 6 and self.metadata.ip_version == 4:
            raise ValueError(f"Cannot look up IPv6 address {ip} in an IPv4-only database")

        packed = address.packed
        bit_count = len(packed) * 8
        node = self._start_node(bit_count)
        node_count = self.metadata.node_count

        depth = 0
        while depth < bit_count and node < node_count:
            bit = (packed[depth >> 3] >> (7 - (depth % 8))) & 1
            node = self._read_record(node, bit)
            depth += 1

        if node == node_count:
            return None, depth
        if node > node_count:
            value = self._resolve_data_pointer(node)
            if not isinstance(value, dict):
                raise InvalidDatabaseError("Data record is not a map")
            return value, depth
        raise InvalidDatabaseError("Search tree walk ended on an internal node")

    def _start_node(self, bit_count: int) -> int:
        if self.metadata.ip_version == 4 or bit_count == 128:
            return 0
        if self._ipv4_start is None:
            node = 0
            for _ in range(96):
                if node >= self.metadata.node_count:
                    break
                node = self._read_record(node, 0)
            self._ipv4_start = node
        return self._ipv4_start

    def _read_record(self, node: int, bit: int) -> int:
        record_size = self.metadata.record_size
        node_bytes = record_size // 4
        base = node * node_bytes
        if base + node_bytes > self.metadata.search_tree_size:
            raise InvalidDatabaseError(f"Node {node} lies outside the search tree")
        buffer = self._buffer

        if record_size == 28:
            middle = buffer[base + 3]
            if bit == 0:
                return ((middle & 0xF0) << 20) | int.from_bytes(buffer[base : base + 3], "big")
            return ((middle & 0x0F) << 24) | int.from_bytes(buffer[base + 4 : base + 7], "big")

        width = record_size // 8
        offset = base + bit * width
        return int.from_bytes(buffer[offset : offset + width], "big")

    def _resolve_data_pointer(self, pointer: int) -> Any:
        resolved = pointer - self.metadata.node_count - DATA_SECTION_SEPARATOR
        if resolved < 0 or resolved >= self._data_section_size:
            raise InvalidDatabaseError(f"Data pointer {pointer} outside the data section")
        value, _ = self._decoder.decode(self._data_section_start + resolved)
        return value


__all__ = [
    "Decoder",
    "METADATA_MARKER",
    "MMDBReader",
    "Metadata",
]
