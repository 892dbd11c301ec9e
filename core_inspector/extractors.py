"""Entity extractors: taskprocessors, channels and bridges.

Each extractor resolves its container, decodes every stored object with
its declared field specs, and returns a ReportSection sorted by name
(case-insensitive). A container that is missing or unreadable yields an
empty section; that is a normal "feature absent" result, not a failure.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from . import constants as C
from .config import InspectorConfig
from .decoder import FieldSpec, RawRecord, decode_record
from .errors import InspectorError
from .port import MemoryHandle, MemoryPort
from .report import Column, ReportSection
from .walkers import (
    ContainerRoot,
    TraversalKind,
    collect,
    container_count,
    iter_container,
    open_container,
)


def _application(record: RawRecord) -> str:
    return f"{record.get('application', C.NONE_STRING)}({record.get('data', C.NONE_STRING)})"


def _bridge_id(record: RawRecord) -> str:
    return record.get("bridge_id", "")


# ============================================================================
# DECLARATIONS
# ============================================================================

TASKPROCESSORS = ContainerRoot(C.TASKPROCESSORS_SYMBOL, TraversalKind.HASH, C.TASKPROCESSOR_TYPE)
CHANNELS = ContainerRoot(C.CHANNELS_SYMBOL, TraversalKind.HASH, C.CHANNEL_TYPE)
BRIDGES = ContainerRoot(C.BRIDGES_SYMBOL, TraversalKind.TREE, C.BRIDGE_TYPE)

TASKPROCESSOR_FIELDS = (
    FieldSpec.chars("name", "name"),
    FieldSpec.integer("processed", "stats._tasks_processed_count"),
    FieldSpec.integer("in_queue", "tps_queue_size"),
    FieldSpec.integer("max_depth", "stats.max_qsize"),
    FieldSpec.integer("low_water", "tps_queue_low"),
    FieldSpec.integer("high_water", "tps_queue_high"),
)

TASKPROCESSOR_COLUMNS = (
    Column("Processor", "name", 50),
    Column("Processed", "processed", 10, ">", "int"),
    Column("In Queue", "in_queue", 10, ">", "int"),
    Column("Max Depth", "max_depth", 10, ">", "int"),
    Column("Low water", "low_water", 10, ">", "int"),
    Column("High water", "high_water", 10, ">", "int"),
)

CHANNEL_FIELDS = (
    FieldSpec.string("name", "name"),
    FieldSpec.chars("context", "context"),
    FieldSpec.chars("exten", "exten"),
    FieldSpec.integer("priority", "priority"),
    FieldSpec.integer("state", "state", labels=C.CHANNEL_STATES),
    FieldSpec.string("application", "appl"),
    FieldSpec.string("data", "data"),
    FieldSpec.string("caller_id", "caller.id.number.str"),
    FieldSpec.timestamp("created", "creationtime"),
    FieldSpec.string("accountcode", "accountcode"),
    FieldSpec.string("peeraccount", "peeraccount"),
    FieldSpec.reference("bridge_id", "bridge", "uniqueid"),
)

CHANNEL_COLUMNS = (
    Column("Channel", "name", 30),
    Column("Context", "context", 20),
    Column("Extension", "exten", 20),
    Column("Pri", "priority", 4, ">", "int"),
    Column("State", "state", 15),
    Column("Application(Data)", "application", 30, render=_application),
    Column("CallerID", "caller_id", 20),
    Column("Created", "created", 19, kind="time"),
    Column("Accountcode", "accountcode", 12),
    Column("PeerAccount", "peeraccount", 12),
    Column("BridgeID", "bridge_id", 36, render=_bridge_id),
)

BRIDGE_FIELDS = (
    FieldSpec.string("uniqueid", "uniqueid"),
    FieldSpec.integer("num_channels", "num_channels"),
    FieldSpec.timestamp("created", "creationtime"),
    FieldSpec.string("subtype", "v_table.name"),
    FieldSpec.string("technology", "technology.name"),
)

BRIDGE_COLUMNS = (
    Column("Bridge-ID", "uniqueid", 36),
    Column("Chans", "num_channels", 5, ">", "int"),
    Column("Created", "created", 19, kind="time"),
    Column("Type", "subtype", 15),
    Column("Technology", "technology", 15),
)


# ============================================================================
# EXTRACTOR
# ============================================================================

@dataclass(frozen=True)
class EntityExtractor:
    """Container walk + record decode + sort, producing one ReportSection."""
    kind: str
    title: str
    root: ContainerRoot
    fields: Tuple[FieldSpec, ...]
    columns: Tuple[Column, ...]
    sort_key: str

    def _sort(self, rows: List[RawRecord]) -> List[RawRecord]:
        def key(record: RawRecord):
            value = str(record.get(self.sort_key, ""))
            return value.lower(), value, record.address
        return sorted(rows, key=key)

    def section(self, rows=(), errors=()) -> ReportSection:
        return ReportSection(self.kind, self.title, self.columns, tuple(rows), tuple(errors))

    def extract(self, port: MemoryPort, config: Optional[InspectorConfig] = None) -> ReportSection:
        config = config or InspectorConfig()
        errors: List[str] = []
        try:
            container = open_container(port, self.root)
        except InspectorError as e:
            errors.append(f"{self.root.symbol}: {e}")
            return self.section((), errors)

        def visit(node: MemoryHandle):
            record = decode_record(port, node, self.fields, config.max_string_length)
            errors.extend(f"{self.kind} 0x{record.address:x} {err}" for err in record.errors)
            return record, False

        nodes = iter_container(port, self.root, container, config.max_chain_length,
                               config.max_tree_depth, errors)
        rows = collect(nodes, visit)
        return self.section(self._sort(rows), errors)


TASKPROCESSOR_EXTRACTOR = EntityExtractor(
    "taskprocessor", "Taskprocessors", TASKPROCESSORS, TASKPROCESSOR_FIELDS, TASKPROCESSOR_COLUMNS, "name")
CHANNEL_EXTRACTOR = EntityExtractor(
    "channel", "Channels", CHANNELS, CHANNEL_FIELDS, CHANNEL_COLUMNS, "name")
BRIDGE_EXTRACTOR = EntityExtractor(
    "bridge", "Bridges", BRIDGES, BRIDGE_FIELDS, BRIDGE_COLUMNS, "uniqueid")


def extract_taskprocessors(port: MemoryPort, config: Optional[InspectorConfig] = None) -> ReportSection:
    return TASKPROCESSOR_EXTRACTOR.extract(port, config)


def extract_channels(port: MemoryPort, config: Optional[InspectorConfig] = None) -> ReportSection:
    return CHANNEL_EXTRACTOR.extract(port, config)


def extract_bridges(port: MemoryPort, config: Optional[InspectorConfig] = None) -> ReportSection:
    return BRIDGE_EXTRACTOR.extract(port, config)


# ============================================================================
# CHANNEL SUMMARY
# ============================================================================

def _global_integer(port: MemoryPort, symbol: str) -> int:
    return port.read_integer(port.resolve(symbol))


def channel_summary(port: MemoryPort) -> Tuple[str, ...]:
    """Active channel count, calls in progress and lifetime call total.

    Each figure is read on its own; an unreadable one prints as unavailable.
    """
    lines = []
    try:
        active = container_count(port, open_container(port, CHANNELS))
        lines.append(f"{active} active channels")
    except InspectorError:
        lines.append(f"active channels: {C.UNAVAILABLE}")
    try:
        lines.append(f"{_global_integer(port, C.COUNTCALLS_SYMBOL)} active calls")
    except InspectorError:
        lines.append(f"active calls: {C.UNAVAILABLE}")
    try:
        lines.append(f"{_global_integer(port, C.TOTALCALLS_SYMBOL)} calls processed")
    except InspectorError:
        lines.append(f"calls processed: {C.UNAVAILABLE}")
    return tuple(lines)
