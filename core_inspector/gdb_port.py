"""Memory Access Port backed by a running gdb session.

Only usable from inside gdb's embedded Python, where the ``gdb`` module is
importable. Handles wrap ``gdb.Value`` objects; every gdb failure is
translated into the engine's error taxonomy.
"""
from __future__ import annotations

from typing import Optional

from .errors import FieldMissing, ReadError, SymbolNotFound, TypeMismatch
from .port import MemoryHandle, MemoryPort, Segment

# Only present when running inside gdb
try:
    import gdb
    HAS_GDB = True
except ImportError:
    gdb = None
    HAS_GDB = False


PAGE_SIZE = 4096


class GdbMemoryPort(MemoryPort):
    """MemoryPort over the inferior gdb currently has selected."""

    def __init__(self, max_string_length: int = 4096):
        if not HAS_GDB:
            raise RuntimeError("GdbMemoryPort can only be used inside gdb")
        self.max_string_length = max_string_length
        self._type_cache = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _wrap(value) -> MemoryHandle:
        try:
            address = int(value.address) if value.address is not None else 0
        except gdb.error:
            address = 0
        return MemoryHandle(address, str(value.type), value)

    def _lookup_type(self, name: str):
        name = " ".join(name.split())
        if name in self._type_cache:
            return self._type_cache[name]
        depth = 0
        base = name
        while base.endswith("*"):
            base = base[:-1].rstrip()
            depth += 1
        try:
            gtype = gdb.lookup_type(base)
        except gdb.error as e:
            raise TypeMismatch(f"unknown type {base}: {e}")
        for _ in range(depth):
            gtype = gtype.pointer()
        self._type_cache[name] = gtype
        return gtype

    @staticmethod
    def _is_pointer(value) -> bool:
        return value.type.strip_typedefs().code == gdb.TYPE_CODE_PTR

    def _read_memory(self, address: int, size: int) -> bytes:
        try:
            return gdb.selected_inferior().read_memory(address, size).tobytes()
        except gdb.MemoryError as e:
            raise ReadError(address, size, str(e))

    # ------------------------------------------------------------------
    # Symbols and types
    # ------------------------------------------------------------------
    def resolve(self, symbol: str) -> MemoryHandle:
        sym = None
        try:
            sym = gdb.lookup_global_symbol(symbol)
            if sym is None and hasattr(gdb, "lookup_static_symbol"):
                sym = gdb.lookup_static_symbol(symbol)
            if sym is not None:
                return self._wrap(sym.value())
            # File-scope statics on older gdb only resolve through the expression parser
            return self._wrap(gdb.parse_and_eval(symbol))
        except gdb.MemoryError as e:
            raise ReadError(0, reason=f"{symbol}: {e}")
        except gdb.error:
            raise SymbolNotFound(symbol)

    def has_symbol(self, symbol: str) -> bool:
        try:
            if gdb.lookup_global_symbol(symbol) is not None:
                return True
            if hasattr(gdb, "lookup_static_symbol") and gdb.lookup_static_symbol(symbol) is not None:
                return True
            gdb.parse_and_eval(f"&{symbol}")
            return True
        except gdb.error:
            return False

    def cast(self, handle: MemoryHandle, type_name: str) -> MemoryHandle:
        gtype = self._lookup_type(type_name)
        try:
            return self._wrap(handle.ref.cast(gtype))
        except gdb.error as e:
            raise TypeMismatch(f"cannot cast {handle.type_name} to {type_name}: {e}")

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------
    def deref(self, handle: MemoryHandle) -> MemoryHandle:
        value = handle.ref
        if not self._is_pointer(value):
            raise TypeMismatch(f"{handle.type_name} is not a pointer")
        if self.read_address(handle) == 0:
            raise ReadError(0, reason=f"null {handle.type_name} dereference")
        try:
            return self._wrap(value.dereference())
        except gdb.MemoryError as e:
            raise ReadError(self.read_address(handle), reason=str(e))
        except gdb.error as e:
            raise TypeMismatch(str(e))

    def child(self, handle: MemoryHandle, segment: Segment) -> MemoryHandle:
        value = handle.ref
        try:
            if self._is_pointer(value):
                if isinstance(segment, int):
                    if int(value) == 0:
                        raise ReadError(0, reason=f"null {handle.type_name} indexed")
                    return self._wrap(value[segment])
                value = self.deref(handle).ref
            return self._wrap(value[segment])
        except gdb.MemoryError as e:
            raise ReadError(handle.address, reason=str(e))
        except (gdb.error, KeyError, IndexError):
            raise FieldMissing(str(value.type), segment)

    # ------------------------------------------------------------------
    # Scalar reads
    # ------------------------------------------------------------------
    def read_integer(self, handle: MemoryHandle) -> int:
        try:
            return int(handle.ref)
        except gdb.MemoryError as e:
            raise ReadError(handle.address, reason=str(e))
        except gdb.error as e:
            raise TypeMismatch(f"{handle.type_name} is not a scalar: {e}")

    def read_address(self, handle: MemoryHandle) -> int:
        if not self._is_pointer(handle.ref):
            raise TypeMismatch(f"{handle.type_name} is not a pointer")
        try:
            return int(handle.ref)
        except gdb.MemoryError as e:
            raise ReadError(handle.address, reason=str(e))

    def _read_until_nul(self, address: int, limit: int) -> bytes:
        out = bytearray()
        while len(out) < limit:
            chunk = min(PAGE_SIZE - (address % PAGE_SIZE), limit - len(out))
            try:
                data = self._read_memory(address, chunk)
            except ReadError:
                if not out:
                    raise
                break  # truncated image; keep what was read
            nul = data.find(b"\0")
            if nul >= 0:
                out.extend(data[:nul])
                break
            out.extend(data)
            address += chunk
        return bytes(out)

    def read_string(self, handle: MemoryHandle, max_length: int = 4096) -> Optional[bytes]:
        address = self.read_address(handle)
        if address == 0:
            return None
        return self._read_until_nul(address, min(max_length, self.max_string_length))

    def read_char_array(self, handle: MemoryHandle) -> bytes:
        gtype = handle.ref.type.strip_typedefs()
        if gtype.code != gdb.TYPE_CODE_ARRAY:
            raise TypeMismatch(f"{handle.type_name} is not a char array")
        if gtype.sizeof:
            return self._read_memory(handle.address, gtype.sizeof).split(b"\0", 1)[0]
        return self._read_until_nul(handle.address, self.max_string_length)

    # ------------------------------------------------------------------
    # Host control
    # ------------------------------------------------------------------
    def is_live(self) -> bool:
        inferior = gdb.selected_inferior()
        if inferior is None or not inferior.pid:
            return False
        connection = getattr(inferior, "connection", None)
        if connection is not None:
            return connection.type != "core"
        try:
            target = gdb.execute("info target", to_string=True)
        except gdb.error:
            return False
        return "core file" not in target.lower()

    def suspend(self) -> bool:
        try:
            threads = gdb.selected_inferior().threads()
            if not any(t.is_running() for t in threads):
                return False
            gdb.execute("interrupt", to_string=True)
            return True
        except gdb.error:
            return False

    def resume(self) -> None:
        gdb.execute("continue &", to_string=True)

    def signal_info(self) -> Optional[str]:
        try:
            siginfo = gdb.parse_and_eval("$_siginfo")
            if int(siginfo["si_signo"]) == 0:
                return None
            return gdb.execute("print $_siginfo", to_string=True)
        except gdb.error:
            return None

    def backtrace(self, scope: str = "current", full: bool = False) -> str:
        command = "bt full" if full else "bt"
        if scope == "all":
            command = f"thread apply all {command}"
        try:
            return gdb.execute(command, to_string=True)
        except gdb.error as e:
            raise ReadError(0, reason=f"{command}: {e}")
