"""Top-level report run.

Stages run in a fixed order; each one is isolated so a failure turns into
a placeholder line in its own section and the next stage still runs. A
live target stopped at the start is always resumed on the way out.
"""
from __future__ import annotations

import sys
import time
from typing import Callable, List, Optional, Sequence, Tuple

from . import constants as C
from .config import InspectorConfig, ReportOptions
from .decoder import read_text, read_timestamp
from .errors import FeatureUnavailable, InspectorError
from .extractors import channel_summary, extract_bridges, extract_channels, extract_taskprocessors
from .formatter import ReportFormatter, format_duration
from .locks import extract_lock_table
from .port import MemoryPort
from .report import ReportRun, StageResult

StageFn = Callable[[], Tuple[Sequence[str], Sequence[str]]]


class ReportOrchestrator:
    """Runs every requested stage against one target image."""

    def __init__(self, port: MemoryPort, config: Optional[InspectorConfig] = None,
                 options: Optional[ReportOptions] = None,
                 progress_callback: Optional[Callable[[str, int, int], None]] = None,
                 reference_time: Optional[float] = None):
        """
        Args:
            port: Memory Access Port for the target.
            config: Limits and rendering switches.
            options: Which sections to produce.
            progress_callback: Called with (message, current, total) per stage.
            reference_time: "Now" for uptime figures; defaults to the run's start.
        """
        self.port = port
        self.config = config or InspectorConfig()
        self.options = options or ReportOptions()
        self.progress_callback = progress_callback
        self.reference_time = reference_time
        self.formatter = ReportFormatter(utc=self.config.utc)

    # ------------------------------------------------------------------
    # Status output
    # ------------------------------------------------------------------
    def _log(self, message: str) -> None:
        if self.config.verbose:
            print(f"[inspector] {message}", file=sys.stderr)

    def _report_progress(self, message: str, current: int = 0, total: int = 0) -> None:
        self._log(message)
        if self.progress_callback:
            try:
                self.progress_callback(message, current, total)
            except Exception:
                pass

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    def _planned_stages(self) -> List[Tuple[str, str, StageFn]]:
        plan = [
            ("thread1", C.SECTION_THREAD1, self._stage_thread1),
            ("brief", C.SECTION_BRIEF, self._stage_brief),
            ("full", C.SECTION_FULL, self._stage_full),
            ("locks", C.SECTION_LOCKS, self._stage_locks),
            ("info", C.SECTION_INFO, self._stage_info),
        ]
        return [stage for stage in plan if getattr(self.options, stage[0])]

    def _run_stage(self, name: str, section: str, fn: StageFn) -> StageResult:
        try:
            lines, errors = fn()
        except FeatureUnavailable as e:
            self._log(f"{name}: skipped ({e})")
            return StageResult(name, section, skipped=True, errors=(str(e),))
        except Exception as e:
            self._log(f"{name}: failed ({e})")
            return StageResult(name, section, (f"{name} unavailable: {e}",), ok=False, errors=(str(e),))
        return StageResult(name, section, tuple(lines), errors=tuple(errors))

    def run(self) -> ReportRun:
        run = ReportRun()
        try:
            live = self.port.is_live()
        except Exception as e:
            run.errors.append(f"cannot tell whether target is live: {e}")
            live = False
        if live:
            try:
                run.suspended = bool(self.port.suspend())
            except Exception as e:
                run.errors.append(f"suspend failed: {e}")
            self._log("target suspended" if run.suspended else "target was already stopped")

        try:
            plan = self._planned_stages()
            for index, (name, section, fn) in enumerate(plan, 1):
                self._report_progress(f"{name}: running", index, len(plan))
                result = self._run_stage(name, section, fn)
                run.stages.append(result)
                run.errors.extend(f"{name}: {err}" for err in result.errors)
        finally:
            if run.suspended:
                try:
                    self.port.resume()
                    run.resumed = True
                    self._log("target resumed")
                except Exception as e:
                    run.errors.append(f"resume failed: {e}")
        return run

    # ------------------------------------------------------------------
    # Stack stages
    # ------------------------------------------------------------------
    def _stage_thread1(self):
        lines: List[str] = []
        signal = self.port.signal_info()
        if signal:
            lines.append("Signal information:")
            lines.extend(signal.rstrip().splitlines())
            lines.append("")
        lines.extend(self.port.backtrace("current", full=True).rstrip().splitlines())
        return lines, ()

    def _stage_brief(self):
        return self.port.backtrace("all", full=False).rstrip().splitlines(), ()

    def _stage_full(self):
        return self.port.backtrace("all", full=True).rstrip().splitlines(), ()

    def _stage_locks(self):
        table = extract_lock_table(self.port, self.config)
        if self.config.locks_csv:
            return self.formatter.render_locks_csv(table), table.errors
        return self.formatter.render_locks(table), table.errors

    # ------------------------------------------------------------------
    # Info stage: each part best-effort on its own
    # ------------------------------------------------------------------
    def _stage_info(self):
        lines: List[str] = []
        errors: List[str] = []
        parts = [
            ("build", self._build_info),
            ("uptime", self._uptime),
            ("build options", self._build_options),
            ("taskprocessors", self._table(extract_taskprocessors)),
            ("channels", self._table(extract_channels)),
            ("bridges", self._table(extract_bridges)),
            ("channel summary", lambda: (channel_summary(self.port), ())),
        ]
        for label, part in parts:
            try:
                part_lines, part_errors = part()
            except Exception as e:
                part_lines, part_errors = [f"{label} unavailable: {e}"], [str(e)]
            lines.extend(part_lines)
            if lines and lines[-1] != "":
                lines.append("")
            errors.extend(f"{label}: {err}" for err in part_errors)

        if self.config.verbose and errors:
            lines.append("Analysis notes:")
            lines.extend(f"  {err}" for err in errors)
            lines.append("")
        return lines, errors

    def _table(self, extract):
        def part():
            section = extract(self.port, self.config)
            return self.formatter.render_section(section), section.errors
        return part

    def _global_text(self, symbol: str) -> str:
        return read_text(self.port, self.port.resolve(symbol), max_length=self.config.max_string_length)

    def _build_info(self):
        lines = []
        for label, symbol in C.BUILD_STRINGS:
            try:
                value = self._global_text(symbol)
            except InspectorError:
                value = C.UNAVAILABLE
            lines.append(f"{label}: {value}")
        return lines, ()

    def _uptime(self):
        now = self.reference_time if self.reference_time is not None else time.time()
        lines = []
        for label, since_label, symbol in (
            ("System started", "System uptime", C.STARTUP_TIME_SYMBOL),
            ("Last reload", "Since last reload", C.RELOAD_TIME_SYMBOL),
        ):
            try:
                stamp = read_timestamp(self.port, self.port.resolve(symbol))
            except InspectorError:
                lines.append(f"{label}: {C.UNAVAILABLE}")
                continue
            if not stamp:
                lines.append(f"{label}: never")
                continue
            lines.append(f"{label}: {self.formatter.format_timestamp(stamp)}")
            lines.append(f"{since_label}: {format_duration(now - stamp)}")
        return lines, ()

    def _build_options(self):
        try:
            value = self._global_text(C.BUILD_OPTIONS_SYMBOL)
        except InspectorError:
            value = C.UNAVAILABLE
        return [f"Build options: {value}"], ()


def run_report(port: MemoryPort, config: Optional[InspectorConfig] = None,
               options: Optional[ReportOptions] = None, out=None,
               reference_time: Optional[float] = None) -> ReportRun:
    """Run every requested stage and write the section stream to ``out`` (stdout by default)."""
    orchestrator = ReportOrchestrator(port, config, options, reference_time=reference_time)
    run = orchestrator.run()
    orchestrator.formatter.write_stream(run, out if out is not None else sys.stdout)
    return run
