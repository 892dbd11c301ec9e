"""Memory Access Port: the narrow interface the engine reads the target through.

The engine never touches target memory directly. It navigates typed
handles with explicit field paths and asks the port for scalar values.
Implementations are supplied by the debugging host (see gdb_port) or by a
byte snapshot (see image).
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Tuple, Union

from .errors import ReadError, SymbolNotFound

Segment = Union[str, int]

_SEGMENT_RE = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)|\[(\d+)\]")


@dataclass(frozen=True)
class FieldPath:
    """Ordered field names / array indices leading to a nested value.

    Pointers met along the way are dereferenced by the port, so
    ``caller.id.number.str`` and ``v_table.name`` work the same whether the
    intermediate members are embedded structs or pointers to them.
    """
    segments: Tuple[Segment, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "FieldPath":
        """Parse ``a.b[3].c`` into a FieldPath. An empty string is the identity path."""
        segments = []
        pos = 0
        text = text.strip()
        while pos < len(text):
            if text[pos] == ".":
                pos += 1
                continue
            match = _SEGMENT_RE.match(text, pos)
            if not match:
                raise ValueError(f"Invalid field path: {text!r}")
            name, index = match.groups()
            segments.append(name if name is not None else int(index))
            pos = match.end()
        return cls(tuple(segments))

    @classmethod
    def of(cls, path: Union[str, "FieldPath", Iterable[Segment]]) -> "FieldPath":
        if isinstance(path, FieldPath):
            return path
        if isinstance(path, str):
            return cls.parse(path)
        return cls(tuple(path))

    def __truediv__(self, other: Union[str, "FieldPath"]) -> "FieldPath":
        return FieldPath(self.segments + FieldPath.of(other).segments)

    def __str__(self) -> str:
        out = []
        for seg in self.segments:
            if isinstance(seg, int):
                out.append(f"[{seg}]")
            else:
                out.append(f".{seg}" if out else seg)
        return "".join(out)

    def __bool__(self) -> bool:
        return bool(self.segments)


@dataclass(frozen=True)
class MemoryHandle:
    """A location plus declared type in the target image.

    ``ref`` carries the host's own object (e.g. a gdb.Value). Handles are
    only meaningful while the image they came from is attached.
    """
    address: int
    type_name: str
    ref: Any = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        return f"({self.type_name}) 0x{self.address:x}"


class MemoryPort(ABC):
    """Read-only access to a target image.

    Every method either returns a value or raises an InspectorError
    subclass; none of them writes to the target.
    """

    # ------------------------------------------------------------------
    # Symbols and types
    # ------------------------------------------------------------------
    @abstractmethod
    def resolve(self, symbol: str) -> MemoryHandle:
        """Resolve a global symbol. Raises SymbolNotFound."""

    def has_symbol(self, symbol: str) -> bool:
        try:
            self.resolve(symbol)
        except SymbolNotFound:
            return False
        return True

    @abstractmethod
    def cast(self, handle: MemoryHandle, type_name: str) -> MemoryHandle:
        """Reinterpret a handle as another type (pointers cast to pointers)."""

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------
    @abstractmethod
    def child(self, handle: MemoryHandle, segment: Segment) -> MemoryHandle:
        """Step one segment: struct member or array element, dereferencing pointers."""

    @abstractmethod
    def deref(self, handle: MemoryHandle) -> MemoryHandle:
        """Follow a pointer handle. Raises ReadError on null."""

    def field(self, handle: MemoryHandle, path: Union[str, FieldPath]) -> MemoryHandle:
        """Walk a whole FieldPath from ``handle``."""
        current = handle
        for segment in FieldPath.of(path).segments:
            current = self.child(current, segment)
        return current

    # ------------------------------------------------------------------
    # Scalar reads
    # ------------------------------------------------------------------
    @abstractmethod
    def read_integer(self, handle: MemoryHandle) -> int:
        """Read an integer, enum or bool scalar."""

    @abstractmethod
    def read_address(self, handle: MemoryHandle) -> int:
        """Read a pointer's value (0 for null)."""

    @abstractmethod
    def read_string(self, handle: MemoryHandle, max_length: int = 4096) -> Optional[bytes]:
        """Read a NUL-terminated string through a char pointer. None for null."""

    @abstractmethod
    def read_char_array(self, handle: MemoryHandle) -> bytes:
        """Read an inline char array up to its first NUL."""

    # ------------------------------------------------------------------
    # Host control. Snapshots are never live and have no threads to show.
    # ------------------------------------------------------------------
    def is_live(self) -> bool:
        return False

    def suspend(self) -> bool:
        """Request the target to stop. Returns True only if it was stopped by this call."""
        return False

    def resume(self) -> None:
        """Let a target stopped by suspend() continue."""

    def signal_info(self) -> Optional[str]:
        """Description of the signal that stopped the target, if any."""
        return None

    def backtrace(self, scope: str = "current", full: bool = False) -> str:
        """Host-formatted backtrace. ``scope`` is "current" or "all"."""
        raise ReadError(0, reason="thread stacks are not available from this image")

