"""Text rendering of report sections, lock tables and the section stream.

Output is a single text stream: each section starts with a
``<<<SECTION:name>>>`` marker line followed by its rendered lines, ready
for a downstream splitter to write per-section files.
"""
from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, List, Optional, TextIO

from . import constants as C
from .decoder import RawRecord
from .locks import LockRecord, LockTable
from .report import Column, ReportRun, ReportSection

LOCK_CSV_COLUMNS = (
    "thread", "status", "file", "line", "function", "lock_name", "lock_type",
    "lock_addr", "times_locked", "suspended", "reentrancy",
    "first_holder_file", "first_holder_line", "first_holder_function", "first_holder_thread",
)

_BANNER = "=" * 71


def section_marker(name: str) -> str:
    return C.SECTION_MARKER.format(name=name)


def format_duration(seconds: float) -> str:
    """``N days, HH:MM:SS`` for an elapsed time."""
    total = max(0, int(seconds))
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    unit = "day" if days == 1 else "days"
    return f"{days} {unit}, {hours:02d}:{minutes:02d}:{secs:02d}"


def _hex(value: Optional[int]) -> str:
    return C.NONE_STRING if value is None else f"0x{value:x}"


class ReportFormatter:
    """Renders value objects into fixed-width text."""

    def __init__(self, utc: bool = False):
        self.utc = utc

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------
    def format_timestamp(self, timestamp: Optional[float]) -> str:
        if timestamp is None:
            return C.NONE_STRING
        try:
            if self.utc:
                moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
            else:
                moment = datetime.fromtimestamp(timestamp)
        except (OverflowError, OSError, ValueError):
            return C.UNAVAILABLE
        return moment.strftime("%Y-%m-%d %H:%M:%S")

    def format_value(self, column: Column, record: RawRecord) -> str:
        if column.render is not None:
            return column.render(record)
        value: Any = record.get(column.key)
        if column.kind == "time":
            return self.format_timestamp(value)
        if value is None:
            return C.NONE_STRING
        return str(value)

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------
    @staticmethod
    def _row(cells: Iterable[str], columns: Iterable[Column]) -> str:
        return " ".join(format(cell, f"{col.align}{col.width}") for cell, col in zip(cells, columns)).rstrip()

    def render_section(self, section: ReportSection) -> List[str]:
        """Title with count, header row, one row per record, blank separator."""
        if not section.rows:
            return [f"{section.kind}s not found"]
        lines = [f"{section.title}: {section.count}"]
        lines.append(self._row((col.header for col in section.columns), section.columns))
        for record in section.rows:
            cells = [self.format_value(col, record) for col in section.columns]
            lines.append(self._row(cells, section.columns))
        lines.append("")
        return lines

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------
    @staticmethod
    def _lock_prefix(lock: LockRecord) -> str:
        if lock.status == "waiting":
            return "Waiting for "
        if lock.status == "failed":
            return "Tried and failed to get "
        return ""

    def render_locks(self, table: LockTable) -> List[str]:
        """Human-readable lock report, one block per thread."""
        lines = [
            _BANNER,
            "=== Currently Held Locks",
            _BANNER,
            "===",
            "=== <pending> <lock#> (<file>): <lock type> <line num> <function> <lock name> "
            "<lock addr> (times locked)",
            "===",
        ]
        for thread in table.threads:
            if not thread.locks:
                continue
            lines.append(f"=== Thread ID: {_hex(thread.thread_id)} LWP:{thread.lwp} ({thread.thread_name})")
            for index, lock in enumerate(thread.locks):
                suspended = " - suspended" if lock.suspended else ""
                lines.append(
                    f"=== ---> {self._lock_prefix(lock)}Lock #{index} ({lock.file}): {lock.lock_type} "
                    f"{lock.line} {lock.function} {lock.lock_name} {_hex(lock.lock_addr)} "
                    f"({lock.times_locked}{suspended})"
                )
                if lock.shows_first_holder:
                    holder = lock.first_holder
                    lines.append(
                        f"=== --- ---> Locked Here: {holder.file} line {holder.line} ({holder.function}) "
                        f"by thread {_hex(holder.thread)}, re-entrancy {lock.reentrancy}"
                    )
            lines.append("=== -------------------------------------------------------------------")
            lines.append("===")
        lines.append(_BANNER)
        return lines

    def render_locks_csv(self, table: LockTable) -> List[str]:
        """Header row (LOCK_CSV_COLUMNS), then one row per held, waiting or failed lock."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(LOCK_CSV_COLUMNS)
        for thread in table.threads:
            for lock in thread.locks:
                row = [
                    _hex(lock.thread), lock.status, lock.file, lock.line, lock.function,
                    lock.lock_name, lock.lock_type, _hex(lock.lock_addr), lock.times_locked,
                    int(lock.suspended), lock.reentrancy if lock.reentrancy is not None else "",
                ]
                if lock.shows_first_holder:
                    holder = lock.first_holder
                    row.extend([holder.file, holder.line, holder.function, _hex(holder.thread)])
                writer.writerow(row)
        return buffer.getvalue().splitlines()

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------
    def iter_stream(self, run: ReportRun) -> Iterator[str]:
        for stage in run.sections:
            yield section_marker(stage.section)
            yield from stage.lines

    def render_stream(self, run: ReportRun) -> str:
        return "\n".join(self.iter_stream(run)) + "\n"

    def write_stream(self, run: ReportRun, out: TextIO) -> None:
        for line in self.iter_stream(run):
            out.write(line + "\n")
