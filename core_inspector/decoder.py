"""Typed record decoding.

Each extractor declares the fields it wants as FieldSpecs (name, path,
kind). decode_record reads them one by one through the Memory Access Port
and returns a RawRecord holding plain Python values, so nothing in the
record refers back to the target image. A field that cannot be read gets
its fallback value; the rest of the record is still decoded.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .constants import EMPTY_STRING, NONE_STRING, UNAVAILABLE
from .errors import InspectorError, TypeMismatch
from .port import FieldPath, MemoryHandle, MemoryPort

_QUOTES = ('"', "'")


class FieldKind(Enum):
    """How a field's raw memory turns into a Python value."""
    INTEGER = "integer"
    STRING_POINTER = "string-pointer"
    CHAR_ARRAY = "inline-char-array"
    TIMESTAMP = "nested-timestamp"
    CROSS_REFERENCE = "nullable-cross-reference"


class _Missing:
    """Marker value: leave the field out of the record (null cross-reference)."""

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()

_DEFAULT_FALLBACKS = {
    FieldKind.INTEGER: None,
    FieldKind.STRING_POINTER: NONE_STRING,
    FieldKind.CHAR_ARRAY: NONE_STRING,
    FieldKind.TIMESTAMP: None,
    # a null reference is MISSING; an unreadable one is reported
    FieldKind.CROSS_REFERENCE: UNAVAILABLE,
}


@dataclass(frozen=True)
class FieldSpec:
    """One field to pull out of a record."""
    name: str
    path: FieldPath
    kind: FieldKind
    # CROSS_REFERENCE: identifier to read from the referenced record
    target_path: Optional[FieldPath] = None
    target_kind: FieldKind = FieldKind.STRING_POINTER
    # INTEGER: optional value -> label table
    labels: Optional[Mapping[int, str]] = None
    unknown_label: str = "Unknown"
    fallback: Any = None

    def __post_init__(self):
        if self.kind is FieldKind.CROSS_REFERENCE and self.target_path is None:
            raise ValueError(f"cross-reference field {self.name!r} needs a target_path")
        if self.fallback is None:
            object.__setattr__(self, "fallback", _DEFAULT_FALLBACKS[self.kind])

    @classmethod
    def integer(cls, name: str, path: Union[str, FieldPath], labels: Optional[Mapping[int, str]] = None) -> "FieldSpec":
        return cls(name, FieldPath.of(path), FieldKind.INTEGER, labels=labels)

    @classmethod
    def string(cls, name: str, path: Union[str, FieldPath]) -> "FieldSpec":
        return cls(name, FieldPath.of(path), FieldKind.STRING_POINTER)

    @classmethod
    def chars(cls, name: str, path: Union[str, FieldPath]) -> "FieldSpec":
        return cls(name, FieldPath.of(path), FieldKind.CHAR_ARRAY)

    @classmethod
    def timestamp(cls, name: str, path: Union[str, FieldPath]) -> "FieldSpec":
        return cls(name, FieldPath.of(path), FieldKind.TIMESTAMP)

    @classmethod
    def reference(cls, name: str, path: Union[str, FieldPath], target: Union[str, FieldPath],
                  target_kind: FieldKind = FieldKind.STRING_POINTER) -> "FieldSpec":
        return cls(name, FieldPath.of(path), FieldKind.CROSS_REFERENCE,
                   target_path=FieldPath.of(target), target_kind=target_kind)


@dataclass(frozen=True)
class RawRecord:
    """Decoded snapshot of one container entry."""
    values: Mapping[str, Any]
    address: int = 0
    errors: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def __contains__(self, key: str) -> bool:
        return key in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


# ============================================================================
# VALUE NORMALIZATION
# ============================================================================

def normalize_string(raw: Optional[Union[bytes, str]]) -> str:
    """Turn raw C string bytes into display text.

    Null/unreadable -> "None"; blank after trimming -> "<None>". Surrounding
    whitespace is removed, then at most one quote character from each end.
    """
    if raw is None:
        return NONE_STRING
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
    text = text.strip()
    if text.startswith(_QUOTES):
        text = text[1:]
    if text.endswith(_QUOTES):
        text = text[:-1]
    text = text.strip()
    return text if text else EMPTY_STRING


def timeval_to_timestamp(seconds: int, microseconds: int) -> float:
    """Absolute timestamp from a (seconds, microseconds) pair."""
    return seconds + microseconds / 1_000_000


# ============================================================================
# FIELD READS
# ============================================================================

def read_text(port: MemoryPort, handle: MemoryHandle, kind: FieldKind = FieldKind.STRING_POINTER,
              max_length: int = 4096) -> str:
    """Read a string member whether it is declared as a pointer or an inline array."""
    if kind is FieldKind.CHAR_ARRAY:
        try:
            return normalize_string(port.read_char_array(handle))
        except TypeMismatch:
            return normalize_string(port.read_string(handle, max_length))
    try:
        return normalize_string(port.read_string(handle, max_length))
    except TypeMismatch:
        return normalize_string(port.read_char_array(handle))


def read_timestamp(port: MemoryPort, handle: MemoryHandle) -> float:
    seconds = port.read_integer(port.field(handle, "tv_sec"))
    microseconds = port.read_integer(port.field(handle, "tv_usec"))
    return timeval_to_timestamp(seconds, microseconds)


def read_value(port: MemoryPort, handle: MemoryHandle, kind: FieldKind, max_length: int = 4096,
               labels: Optional[Mapping[int, str]] = None, unknown_label: str = "Unknown") -> Any:
    """Read one value of ``kind`` located exactly at ``handle``."""
    if kind is FieldKind.INTEGER:
        value = port.read_integer(handle)
        if labels is not None:
            return labels.get(value, unknown_label)
        return value
    if kind in (FieldKind.STRING_POINTER, FieldKind.CHAR_ARRAY):
        return read_text(port, handle, kind, max_length)
    if kind is FieldKind.TIMESTAMP:
        return read_timestamp(port, handle)
    raise TypeMismatch(f"{kind.value} cannot be read as a plain value")


def _read_reference(port: MemoryPort, handle: MemoryHandle, spec: FieldSpec, max_length: int) -> Any:
    pointer = port.field(handle, spec.path)
    if port.read_address(pointer) == 0:
        return MISSING
    target = port.field(pointer, spec.target_path)
    return read_value(port, target, spec.target_kind, max_length)


def decode_field(port: MemoryPort, handle: MemoryHandle, spec: FieldSpec, max_length: int = 4096) -> Any:
    """Decode one field, raising on failure. MISSING means "leave it out"."""
    if spec.kind is FieldKind.CROSS_REFERENCE:
        return _read_reference(port, handle, spec, max_length)
    return read_value(port, port.field(handle, spec.path), spec.kind, max_length,
                      spec.labels, spec.unknown_label)


def decode_record(port: MemoryPort, handle: MemoryHandle, specs: Sequence[FieldSpec],
                  max_length: int = 4096) -> RawRecord:
    """Decode every spec from the record at ``handle``.

    Never raises for an unreadable field: the field takes its fallback and
    the failure is noted in ``RawRecord.errors``.
    """
    values: Dict[str, Any] = {}
    errors: List[str] = []
    for spec in specs:
        try:
            value = decode_field(port, handle, spec, max_length)
        except InspectorError as e:
            errors.append(f"{spec.name}: {e}")
            value = spec.fallback
        if value is not MISSING:
            values[spec.name] = value
    return RawRecord(values, handle.address, tuple(errors))
