"""Lock tracking table.

Targets built with lock debugging keep a global list of per-thread lock
records (``lock_infos``). Each thread record holds a fixed array of the
locks it holds, waits on, or failed to get. This module walks that list;
rendering lives in the formatter.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from . import constants as C
from .config import InspectorConfig
from .decoder import FieldSpec, decode_record
from .errors import FeatureUnavailable, InspectorError, SymbolNotFound, TraversalCycleDetected
from .port import MemoryHandle, MemoryPort

# AST_MAX_LOCKS in a default build
MAX_LOCKS_PER_THREAD = 64

THREAD_FIELDS = (
    FieldSpec.integer("thread_id", "thread_id"),
    FieldSpec.integer("lwp", "lwp"),
    FieldSpec.string("thread_name", "thread_name"),
    FieldSpec.integer("num_locks", "num_locks"),
)

LOCK_FIELDS = (
    FieldSpec.string("file", "file"),
    FieldSpec.integer("line", "line_num"),
    FieldSpec.string("function", "func"),
    FieldSpec.string("lock_name", "lock_name"),
    FieldSpec.integer("lock_addr", "lock_addr"),
    FieldSpec.integer("times_locked", "times_locked"),
    FieldSpec.integer("suspended", "suspended"),
    FieldSpec.integer("type", "type"),
    FieldSpec.integer("pending", "pending"),
)

TRACK_FIELDS = (
    FieldSpec.integer("reentrancy", "reentrancy"),
    FieldSpec.string("file", "file[0]"),
    FieldSpec.integer("line", "lineno[0]"),
    FieldSpec.string("function", "func[0]"),
    FieldSpec.integer("thread", "thread_id[0]"),
)


@dataclass(frozen=True)
class FirstHolder:
    """Where a re-entrant lock was first acquired."""
    file: str
    line: Optional[int]
    function: str
    thread: Optional[int]


@dataclass(frozen=True)
class LockRecord:
    thread: Optional[int]
    status: str  # holding / waiting / failed
    file: str
    line: Optional[int]
    function: str
    lock_name: str
    lock_type: str
    lock_addr: Optional[int]
    times_locked: Optional[int]
    suspended: bool
    pending: int = 0
    reentrancy: Optional[int] = None
    first_holder: Optional[FirstHolder] = None

    @property
    def shows_first_holder(self) -> bool:
        return bool(self.reentrancy) and bool(self.pending) and self.first_holder is not None


@dataclass(frozen=True)
class ThreadLocks:
    thread_id: Optional[int]
    lwp: Optional[int]
    thread_name: str
    locks: Tuple[LockRecord, ...] = ()


@dataclass(frozen=True)
class LockTable:
    threads: Tuple[ThreadLocks, ...] = ()
    errors: Tuple[str, ...] = ()

    @property
    def lock_count(self) -> int:
        return sum(len(t.locks) for t in self.threads)


def lock_status(pending: Optional[int]) -> str:
    if pending == -1:
        return "failed"
    if pending and pending > 0:
        return "waiting"
    return "holding"


def _read_first_holder(port: MemoryPort, lock: MemoryHandle, config: InspectorConfig,
                       errors: List[str]) -> Tuple[Optional[int], Optional[FirstHolder]]:
    """Follow a mutex's tracking block for its re-entrancy details."""
    try:
        mutex = port.cast(port.field(lock, "lock_addr"), f"{C.MUTEX_TYPE} *")
        track = port.field(mutex, "track")
        if port.read_address(track) == 0:
            return None, None
        record = decode_record(port, port.deref(track), TRACK_FIELDS, config.max_string_length)
    except InspectorError as e:
        errors.append(f"lock tracking block: {e}")
        return None, None
    errors.extend(f"lock tracking block {err}" for err in record.errors)
    holder = FirstHolder(record["file"], record["line"], record["function"], record["thread"])
    return record["reentrancy"], holder


def _read_lock(port: MemoryPort, thread_id: Optional[int], lock: MemoryHandle,
               config: InspectorConfig, errors: List[str]) -> LockRecord:
    record = decode_record(port, lock, LOCK_FIELDS, config.max_string_length)
    errors.extend(f"lock 0x{lock.address:x} {err}" for err in record.errors)
    lock_type = record["type"]
    reentrancy, holder = None, None
    if lock_type == 0 and record["lock_addr"]:
        reentrancy, holder = _read_first_holder(port, lock, config, errors)
    return LockRecord(
        thread=thread_id,
        status=lock_status(record["pending"]),
        file=record["file"],
        line=record["line"],
        function=record["function"],
        lock_name=record["lock_name"],
        lock_type=C.LOCK_TYPES.get(lock_type, "UNKNOWN"),
        lock_addr=record["lock_addr"],
        times_locked=record["times_locked"],
        suspended=bool(record["suspended"]),
        pending=record["pending"] or 0,
        reentrancy=reentrancy,
        first_holder=holder,
    )


def extract_lock_table(port: MemoryPort, config: Optional[InspectorConfig] = None) -> LockTable:
    """Walk the per-thread lock list.

    Raises FeatureUnavailable when the target was built without lock
    tracking; every other problem is recorded in ``LockTable.errors``.
    """
    config = config or InspectorConfig()
    try:
        head = port.resolve(C.LOCK_INFOS_SYMBOL)
    except SymbolNotFound:
        raise FeatureUnavailable("lock tracking is not compiled into the target")

    errors: List[str] = []
    threads: List[ThreadLocks] = []
    try:
        link = port.field(head, "first")
        address = port.read_address(link)
    except InspectorError as e:
        return LockTable((), (f"{C.LOCK_INFOS_SYMBOL}: {e}",))

    visited: Set[int] = set()
    while address:
        if address in visited:
            errors.append(str(TraversalCycleDetected(address, C.LOCK_INFOS_SYMBOL)))
            break
        if len(visited) >= config.max_chain_length:
            errors.append(f"{C.LOCK_INFOS_SYMBOL}: more than {config.max_chain_length} threads, stopped")
            break
        visited.add(address)

        try:
            info = port.deref(link)
        except InspectorError as e:
            errors.append(f"thread record 0x{address:x}: {e}")
            break
        thread = decode_record(port, info, THREAD_FIELDS, config.max_string_length)
        errors.extend(f"thread record 0x{address:x} {err}" for err in thread.errors)

        num_locks = thread["num_locks"] or 0
        if not 0 <= num_locks <= MAX_LOCKS_PER_THREAD:
            errors.append(f"thread record 0x{address:x}: implausible lock count {num_locks}")
            num_locks = 0
        locks = []
        for index in range(num_locks):
            try:
                lock = port.child(port.field(info, "locks"), index)
            except InspectorError as e:
                errors.append(f"thread record 0x{address:x} lock #{index}: {e}")
                break
            locks.append(_read_lock(port, thread["thread_id"], lock, config, errors))
        threads.append(ThreadLocks(thread["thread_id"], thread["lwp"], thread["thread_name"], tuple(locks)))

        try:
            link = port.field(info, "entry.next")
            address = port.read_address(link)
        except InspectorError as e:
            errors.append(f"thread record 0x{address:x} link: {e}")
            break

    return LockTable(tuple(threads), tuple(errors))
