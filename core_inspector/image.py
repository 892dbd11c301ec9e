"""Byte-snapshot implementation of the Memory Access Port.

A snapshot is a set of memory segments, a type registry describing C-like
layouts (scalars, pointers, fixed and flexible arrays, structs) and a
symbol table. Snapshots back the offline CLI and the test suite; the raw
bytes can also be served from a Windows minidump through the ``minidump``
package's memory reader.

Images are assembled with ImageBuilder or loaded from a JSON image
description (see load_image_description).
"""
from __future__ import annotations

import bisect
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .errors import FieldMissing, ReadError, SymbolNotFound, TypeMismatch
from .port import FieldPath, MemoryHandle, MemoryPort, Segment

# Optional minidump library
try:
    from minidump.minidumpfile import MinidumpFile
    HAS_MINIDUMP = True
except ImportError:
    MinidumpFile = None
    HAS_MINIDUMP = False


# ============================================================================
# TYPE MODEL
# ============================================================================

@dataclass(frozen=True)
class ScalarType:
    """Integer-like scalar (char, int, long, enum, bool...)."""
    name: str
    size: int
    signed: bool = True


@dataclass(frozen=True)
class PointerType:
    """Pointer to a named type."""
    target: str

    @property
    def name(self) -> str:
        return f"{self.target} *"


@dataclass(frozen=True)
class ArrayType:
    """Array of ``count`` elements. A count of 0 is a flexible array member."""
    element: str
    count: int

    @property
    def name(self) -> str:
        return f"{self.element}[{self.count}]"


@dataclass
class StructType:
    """Struct with explicit member offsets."""
    name: str
    size: int
    fields: Dict[str, Tuple[int, str]] = field(default_factory=dict)  # name -> (offset, type)
    align: int = 1


CType = Union[ScalarType, PointerType, ArrayType, StructType]

DEFAULT_SCALARS: Sequence[Tuple[str, int, bool]] = (
    ("char", 1, True),
    ("signed char", 1, True),
    ("unsigned char", 1, False),
    ("_Bool", 1, False),
    ("short", 2, True),
    ("unsigned short", 2, False),
    ("int", 4, True),
    ("unsigned int", 4, False),
    ("int32_t", 4, True),
    ("uint32_t", 4, False),
    ("long", 8, True),
    ("unsigned long", 8, False),
    ("long long", 8, True),
    ("unsigned long long", 8, False),
    ("int64_t", 8, True),
    ("uint64_t", 8, False),
    ("size_t", 8, False),
    ("time_t", 8, True),
    ("suseconds_t", 8, True),
    ("pthread_t", 8, False),
    ("void", 1, False),
)

CHAR_TYPES = {"char", "signed char", "unsigned char"}


class TypeRegistry:
    """Named C types, with pointer and array types derived from their spelling."""

    def __init__(self, pointer_size: int = 8, byteorder: str = "little"):
        self.pointer_size = pointer_size
        self.byteorder = byteorder
        self._types: Dict[str, CType] = {}
        for name, size, signed in DEFAULT_SCALARS:
            self._types[name] = ScalarType(name, size, signed)

    @staticmethod
    def normalize(name: str) -> str:
        name = " ".join(name.split())
        return name.replace(" *", "*").replace("*", " *").strip()

    def lookup(self, name: str) -> CType:
        name = self.normalize(name)
        if name.endswith("*"):
            return PointerType(name[:-1].strip())
        if name.endswith("]"):
            base, _, count = name[:-1].rpartition("[")
            try:
                return ArrayType(base.strip(), int(count or 0))
            except ValueError:
                raise TypeMismatch(f"bad array type: {name}")
        try:
            return self._types[name]
        except KeyError:
            raise TypeMismatch(f"unknown type: {name}")

    def __contains__(self, name: str) -> bool:
        try:
            self.lookup(name)
        except TypeMismatch:
            return False
        return True

    def sizeof(self, ctype: Union[str, CType]) -> int:
        if isinstance(ctype, str):
            ctype = self.lookup(ctype)
        if isinstance(ctype, PointerType):
            return self.pointer_size
        if isinstance(ctype, ArrayType):
            return ctype.count * self.sizeof(ctype.element)
        return ctype.size

    def alignof(self, ctype: Union[str, CType]) -> int:
        if isinstance(ctype, str):
            ctype = self.lookup(ctype)
        if isinstance(ctype, PointerType):
            return self.pointer_size
        if isinstance(ctype, ArrayType):
            return self.alignof(ctype.element)
        if isinstance(ctype, StructType):
            return ctype.align
        return max(1, min(ctype.size, self.pointer_size))

    def add_alias(self, name: str, target: str) -> None:
        """Register ``name`` as another spelling of ``target`` (typedefs, enums)."""
        resolved = self.lookup(target)
        if isinstance(resolved, ScalarType):
            resolved = ScalarType(self.normalize(name), resolved.size, resolved.signed)
        self._types[self.normalize(name)] = resolved

    def add_struct(self, name: str, members: Sequence[Tuple[str, str]],
                   size: Optional[int] = None) -> StructType:
        """Lay out a struct with natural alignment, C style.

        Member types must already be known, except pointer targets which
        are resolved lazily (so self-referential nodes work).
        """
        name = self.normalize(name)
        offsets: Dict[str, Tuple[int, str]] = {}
        offset = 0
        align = 1
        for member, type_name in members:
            type_name = self.normalize(type_name)
            member_align = self.alignof(type_name)
            offset = (offset + member_align - 1) // member_align * member_align
            offsets[member] = (offset, type_name)
            offset += self.sizeof(type_name)
            align = max(align, member_align)
        laid_out = (offset + align - 1) // align * align
        struct = StructType(name, size if size is not None else laid_out, offsets, align)
        self._types[name] = struct
        return struct

    def add_struct_offsets(self, name: str, size: int,
                           members: Dict[str, Tuple[int, str]]) -> StructType:
        """Register a struct whose member offsets are already known."""
        name = self.normalize(name)
        struct = StructType(name, size, {k: (int(off), self.normalize(t)) for k, (off, t) in members.items()})
        align = 1
        for _, member_type in struct.fields.values():
            try:
                align = max(align, self.alignof(member_type))
            except TypeMismatch:
                # member struct not registered yet
                align = max(align, self.pointer_size)
        struct.align = align
        self._types[name] = struct
        return struct

    def structs(self) -> List[StructType]:
        return [t for name, t in self._types.items() if isinstance(t, StructType) and t.name == name]

    def aliases(self) -> Dict[str, str]:
        """Typedef/enum spellings that are not part of the default set."""
        defaults = {name for name, _, _ in DEFAULT_SCALARS}
        out = {}
        for name, ctype in self._types.items():
            if isinstance(ctype, StructType):
                if ctype.name != name:
                    out[name] = ctype.name
            elif isinstance(ctype, ScalarType) and name not in defaults:
                out[name] = next(d for d, size, signed in DEFAULT_SCALARS
                                 if size == ctype.size and signed == ctype.signed)
        return out


# ============================================================================
# MEMORY
# ============================================================================

class SegmentMemory:
    """Sorted, non-overlapping memory segments with range-checked reads."""

    def __init__(self, segments: Optional[Dict[int, bytes]] = None):
        self._starts: List[int] = []
        self._data: List[bytes] = []
        for start, data in sorted((segments or {}).items()):
            self.add(start, data)

    def add(self, start: int, data: bytes) -> None:
        idx = bisect.bisect_left(self._starts, start)
        self._starts.insert(idx, start)
        self._data.insert(idx, bytes(data))

    def _locate(self, address: int) -> Optional[Tuple[int, bytes]]:
        idx = bisect.bisect_right(self._starts, address) - 1
        if idx < 0:
            return None
        start, data = self._starts[idx], self._data[idx]
        if address >= start + len(data):
            return None
        return start, data

    def read(self, address: int, size: int) -> bytes:
        found = self._locate(address)
        if found is None:
            raise ReadError(address, size, "unmapped")
        start, data = found
        offset = address - start
        if offset + size > len(data):
            raise ReadError(address, size, "truncated")
        return data[offset:offset + size]

    def read_upto(self, address: int, limit: int) -> bytes:
        """Read at most ``limit`` bytes, stopping at the end of the segment."""
        found = self._locate(address)
        if found is None:
            raise ReadError(address, limit, "unmapped")
        start, data = found
        offset = address - start
        return data[offset:offset + limit]

    def items(self) -> List[Tuple[int, bytes]]:
        return list(zip(self._starts, self._data))


class MinidumpMemory:
    """Serves reads from a Windows minidump's memory ranges."""

    def __init__(self, dump_path: str):
        if not HAS_MINIDUMP:
            raise RuntimeError("minidump support requires the 'minidump' package")
        self.dump_path = dump_path
        self._reader = MinidumpFile.parse(dump_path).get_reader()

    def read(self, address: int, size: int) -> bytes:
        try:
            data = self._reader.read(address, size)
        except Exception as e:
            raise ReadError(address, size, str(e))
        if data is None or len(data) < size:
            raise ReadError(address, size, "truncated")
        return bytes(data)

    def read_upto(self, address: int, limit: int) -> bytes:
        # The reader refuses reads that cross the end of a range, so shrink until it fits.
        size = limit
        while size > 0:
            try:
                return self.read(address, size)
            except ReadError:
                size //= 2
        raise ReadError(address, limit, "unmapped")


# ============================================================================
# PORT
# ============================================================================

class SnapshotMemoryPort(MemoryPort):
    """MemoryPort over a byte snapshot plus an explicit type registry."""

    def __init__(self, memory, types: TypeRegistry,
                 symbols: Optional[Dict[str, Tuple[int, str]]] = None,
                 max_string_length: int = 4096):
        self.memory = memory
        self.types = types
        self.symbols: Dict[str, Tuple[int, str]] = dict(symbols or {})
        self.max_string_length = max_string_length

    # -- symbols and types -------------------------------------------------
    def resolve(self, symbol: str) -> MemoryHandle:
        try:
            address, type_name = self.symbols[symbol]
        except KeyError:
            raise SymbolNotFound(symbol)
        return MemoryHandle(address, self.types.normalize(type_name))

    def cast(self, handle: MemoryHandle, type_name: str) -> MemoryHandle:
        new_type = self.types.lookup(type_name)
        old_type = self.types.lookup(handle.type_name)
        if isinstance(old_type, PointerType) != isinstance(new_type, PointerType):
            raise TypeMismatch(f"cannot cast {handle.type_name} to {type_name}")
        return MemoryHandle(handle.address, self.types.normalize(type_name))

    # -- navigation --------------------------------------------------------
    def deref(self, handle: MemoryHandle) -> MemoryHandle:
        ctype = self.types.lookup(handle.type_name)
        if not isinstance(ctype, PointerType):
            raise TypeMismatch(f"{handle.type_name} is not a pointer")
        if ctype.target == "void":
            raise TypeMismatch("cannot dereference void *")
        target = self.read_address(handle)
        if target == 0:
            raise ReadError(0, reason=f"null {handle.type_name} dereference")
        return MemoryHandle(target, ctype.target)

    def child(self, handle: MemoryHandle, segment: Segment) -> MemoryHandle:
        ctype = self.types.lookup(handle.type_name)
        if isinstance(ctype, PointerType):
            if isinstance(segment, int):
                base = self.read_address(handle)
                if base == 0:
                    raise ReadError(0, reason=f"null {handle.type_name} indexed")
                return MemoryHandle(base + segment * self.types.sizeof(ctype.target), ctype.target)
            handle = self.deref(handle)
            ctype = self.types.lookup(handle.type_name)

        if isinstance(segment, int):
            if not isinstance(ctype, ArrayType):
                raise FieldMissing(handle.type_name, segment)
            if ctype.count and not 0 <= segment < ctype.count:
                raise FieldMissing(handle.type_name, segment)
            stride = self.types.sizeof(ctype.element)
            return MemoryHandle(handle.address + segment * stride, ctype.element)

        if not isinstance(ctype, StructType) or segment not in ctype.fields:
            raise FieldMissing(handle.type_name, segment)
        offset, member_type = ctype.fields[segment]
        return MemoryHandle(handle.address + offset, member_type)

    # -- scalar reads ------------------------------------------------------
    def _read_scalar(self, handle: MemoryHandle, size: int, signed: bool) -> int:
        raw = self.memory.read(handle.address, size)
        return int.from_bytes(raw, self.types.byteorder, signed=signed)

    def read_integer(self, handle: MemoryHandle) -> int:
        ctype = self.types.lookup(handle.type_name)
        if isinstance(ctype, PointerType):
            return self.read_address(handle)
        if not isinstance(ctype, ScalarType):
            raise TypeMismatch(f"{handle.type_name} is not a scalar")
        return self._read_scalar(handle, ctype.size, ctype.signed)

    def read_address(self, handle: MemoryHandle) -> int:
        ctype = self.types.lookup(handle.type_name)
        if not isinstance(ctype, PointerType):
            raise TypeMismatch(f"{handle.type_name} is not a pointer")
        return self._read_scalar(handle, self.types.pointer_size, False)

    def read_string(self, handle: MemoryHandle, max_length: int = 4096) -> Optional[bytes]:
        address = self.read_address(handle)
        if address == 0:
            return None
        data = self.memory.read_upto(address, min(max_length, self.max_string_length))
        return data.split(b"\0", 1)[0]

    def read_char_array(self, handle: MemoryHandle) -> bytes:
        ctype = self.types.lookup(handle.type_name)
        if not isinstance(ctype, ArrayType) or ctype.element not in CHAR_TYPES:
            raise TypeMismatch(f"{handle.type_name} is not a char array")
        if ctype.count:
            data = self.memory.read(handle.address, ctype.count)
        else:
            data = self.memory.read_upto(handle.address, self.max_string_length)
        return data.split(b"\0", 1)[0]


# ============================================================================
# BUILDER
# ============================================================================

class ImageBuilder:
    """Assembles a synthetic image: types, zeroed allocations, symbols.

    Example::

        b = ImageBuilder()
        b.struct("struct timeval", [("tv_sec", "long"), ("tv_usec", "long")])
        tv = b.new("struct timeval", {"tv_sec": 1700000000, "tv_usec": 500000})
        b.symbol("ast_startuptime", "struct timeval", tv)
        port = b.build()
    """

    BASE_ADDRESS = 0x10000

    def __init__(self, pointer_size: int = 8, byteorder: str = "little"):
        self.types = TypeRegistry(pointer_size, byteorder)
        self._memory = bytearray()
        self._symbols: Dict[str, Tuple[int, str]] = {}
        self._holes: List[Tuple[int, int]] = []

    # -- types -------------------------------------------------------------
    def struct(self, name: str, members: Sequence[Tuple[str, str]], size: Optional[int] = None) -> StructType:
        return self.types.add_struct(name, members, size)

    def alias(self, name: str, target: str) -> None:
        self.types.add_alias(name, target)

    # -- memory ------------------------------------------------------------
    @property
    def end_address(self) -> int:
        return self.BASE_ADDRESS + len(self._memory)

    def alloc(self, size: int, align: int = 16) -> int:
        pad = (-len(self._memory)) % align
        self._memory.extend(b"\0" * pad)
        address = self.end_address
        self._memory.extend(b"\0" * max(size, 1))
        return address

    def write_bytes(self, address: int, data: bytes) -> None:
        offset = address - self.BASE_ADDRESS
        if offset < 0 or offset + len(data) > len(self._memory):
            raise ValueError(f"write outside image at 0x{address:x}")
        self._memory[offset:offset + len(data)] = data

    def cstring(self, text: Union[str, bytes]) -> int:
        data = text.encode("utf-8") if isinstance(text, str) else text
        address = self.alloc(len(data) + 1, align=1)
        self.write_bytes(address, data + b"\0")
        return address

    def _locate(self, address: int, type_name: str, path: Union[str, FieldPath]) -> Tuple[int, CType]:
        ctype = self.types.lookup(type_name)
        for segment in FieldPath.of(path).segments:
            if isinstance(segment, int):
                if not isinstance(ctype, ArrayType):
                    raise FieldMissing(type_name, segment)
                address += segment * self.types.sizeof(ctype.element)
                ctype = self.types.lookup(ctype.element)
            else:
                if not isinstance(ctype, StructType) or segment not in ctype.fields:
                    raise FieldMissing(getattr(ctype, "name", type_name), segment)
                offset, member_type = ctype.fields[segment]
                address += offset
                ctype = self.types.lookup(member_type)
        return address, ctype

    def set(self, address: int, type_name: str, path: Union[str, FieldPath], value: Any) -> None:
        """Store ``value`` into the member at ``path`` of the object at ``address``.

        Integers fill scalars and pointers; str/bytes fill char arrays, or
        are interned as C strings when the member is a char pointer.
        """
        target, ctype = self._locate(address, type_name, path)
        if isinstance(ctype, PointerType):
            if isinstance(value, (str, bytes)):
                value = self.cstring(value)
            self.write_bytes(target, int(value).to_bytes(self.types.pointer_size, self.types.byteorder))
        elif isinstance(ctype, ScalarType):
            self.write_bytes(target, int(value).to_bytes(ctype.size, self.types.byteorder, signed=ctype.signed))
        elif isinstance(ctype, ArrayType) and isinstance(value, (str, bytes)):
            data = value.encode("utf-8") if isinstance(value, str) else value
            if ctype.count and len(data) >= ctype.count:
                data = data[:ctype.count - 1]
            self.write_bytes(target, data + b"\0")
        else:
            raise TypeMismatch(f"cannot assign {type(value).__name__} to {getattr(ctype, 'name', ctype)}")

    def new(self, type_name: str, values: Optional[Dict[str, Any]] = None, extra: int = 0) -> int:
        """Allocate a zeroed object (plus ``extra`` trailing bytes) and fill members."""
        ctype = self.types.lookup(type_name)
        address = self.alloc(self.types.sizeof(ctype) + extra, align=max(16, self.types.alignof(ctype)))
        for path, value in (values or {}).items():
            self.set(address, type_name, path, value)
        return address

    def symbol(self, name: str, type_name: str, address: int) -> None:
        self._symbols[name] = (address, self.types.normalize(type_name))

    def global_pointer(self, name: str, type_name: str, value: int) -> int:
        """Create a pointer-typed global holding ``value``."""
        ptr_type = f"{type_name} *"
        address = self.alloc(self.types.pointer_size, align=self.types.pointer_size)
        self.write_bytes(address, value.to_bytes(self.types.pointer_size, self.types.byteorder))
        self.symbol(name, ptr_type, address)
        return address

    def unmap(self, address: int, size: int) -> None:
        """Leave a hole in the built image, as a truncated core would."""
        self._holes.append((address, size))

    # -- output ------------------------------------------------------------
    def segments(self) -> Dict[int, bytes]:
        segments = {self.BASE_ADDRESS: bytes(self._memory)}
        for hole_start, hole_size in sorted(self._holes):
            for start, data in list(segments.items()):
                end = start + len(data)
                if hole_start >= end or hole_start + hole_size <= start:
                    continue
                del segments[start]
                if hole_start > start:
                    segments[start] = data[:hole_start - start]
                if hole_start + hole_size < end:
                    segments[hole_start + hole_size] = data[hole_start + hole_size - start:]
        return segments

    def build(self, max_string_length: int = 4096) -> SnapshotMemoryPort:
        return SnapshotMemoryPort(SegmentMemory(self.segments()), self.types,
                                  self._symbols, max_string_length)

    def to_description(self) -> Dict[str, Any]:
        """Serialize the image as a JSON image description."""
        return {
            "pointer_size": self.types.pointer_size,
            "byteorder": self.types.byteorder,
            "aliases": self.types.aliases(),
            "structs": {
                s.name: {"size": s.size, "fields": {k: [off, t] for k, (off, t) in s.fields.items()}}
                for s in self.types.structs()
            },
            "symbols": {name: {"address": hex(addr), "type": t} for name, (addr, t) in self._symbols.items()},
            "segments": [{"address": hex(start), "hex": data.hex()} for start, data in self.segments().items()],
        }


# ============================================================================
# JSON IMAGE DESCRIPTIONS
# ============================================================================

def _parse_int(value: Union[int, str]) -> int:
    return value if isinstance(value, int) else int(value, 0)


def load_image_description(path: Union[str, Path], minidump_path: Optional[str] = None,
                           max_string_length: int = 4096) -> SnapshotMemoryPort:
    """Load a snapshot from a JSON image description.

    The description carries ``structs``, ``aliases``, ``symbols`` and
    either inline ``segments`` (hex encoded) or, when ``minidump_path`` is
    given, bytes are read from that minidump instead.
    """
    with open(path, "r", encoding="utf-8") as f:
        desc = json.load(f)

    types = TypeRegistry(int(desc.get("pointer_size", 8)), desc.get("byteorder", "little"))
    # Scalar aliases first (struct members may use them), struct typedefs last.
    deferred = {}
    for name, target in desc.get("aliases", {}).items():
        if target in types:
            types.add_alias(name, target)
        else:
            deferred[name] = target
    for name, spec in desc.get("structs", {}).items():
        members = {k: (_parse_int(v[0]), v[1]) for k, v in spec.get("fields", {}).items()}
        types.add_struct_offsets(name, _parse_int(spec["size"]), members)
    for name, target in deferred.items():
        types.add_alias(name, target)

    symbols = {
        name: (_parse_int(entry["address"]), entry["type"])
        for name, entry in desc.get("symbols", {}).items()
    }

    if minidump_path:
        memory = MinidumpMemory(minidump_path)
    else:
        memory = SegmentMemory({
            _parse_int(seg["address"]): bytes.fromhex(seg["hex"])
            for seg in desc.get("segments", [])
        })
    return SnapshotMemoryPort(memory, types, symbols, max_string_length)
