"""Core Inspector package.

This package renders diagnostic reports from a crashed or live server
process image, including:
- Stack traces of the stopping thread and of all threads
- Taskprocessor queue statistics
- Active channels and bridges, walked straight out of their containers
- Held and waiting locks (when lock tracking is compiled in)
- Build identification, uptime and build options
"""
from .config import InspectorConfig, ReportOptions
from .decoder import FieldKind, FieldSpec, RawRecord, decode_record, normalize_string
from .errors import (
    FeatureUnavailable,
    FieldMissing,
    InspectorError,
    ReadError,
    SymbolNotFound,
    TraversalCycleDetected,
    TypeMismatch,
)
from .extractors import extract_bridges, extract_channels, extract_taskprocessors, channel_summary
from .formatter import ReportFormatter
from .image import ImageBuilder, SnapshotMemoryPort, load_image_description
from .locks import LockTable, extract_lock_table
from .orchestrator import ReportOrchestrator, run_report
from .port import FieldPath, MemoryHandle, MemoryPort
from .report import ReportRun, ReportSection, StageResult
from .gdb_port import GdbMemoryPort, HAS_GDB

__all__ = [
    # Configuration
    "InspectorConfig",
    "ReportOptions",
    # Memory access
    "MemoryPort",
    "MemoryHandle",
    "FieldPath",
    "SnapshotMemoryPort",
    "ImageBuilder",
    "load_image_description",
    "GdbMemoryPort",
    "HAS_GDB",
    # Decoding
    "FieldKind",
    "FieldSpec",
    "RawRecord",
    "decode_record",
    "normalize_string",
    # Extraction and reporting
    "extract_taskprocessors",
    "extract_channels",
    "extract_bridges",
    "channel_summary",
    "extract_lock_table",
    "LockTable",
    "ReportSection",
    "StageResult",
    "ReportRun",
    "ReportFormatter",
    "ReportOrchestrator",
    "run_report",
    # Errors
    "InspectorError",
    "SymbolNotFound",
    "ReadError",
    "TypeMismatch",
    "FieldMissing",
    "TraversalCycleDetected",
    "FeatureUnavailable",
]

__version__ = "1.0.0"
