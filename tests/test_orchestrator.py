"""Tests for the report run: stage isolation, suspend/resume and the section stream."""
import io
import os
import sys
import unittest
from unittest.mock import MagicMock, Mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core_inspector.config import InspectorConfig, ReportOptions
from core_inspector.errors import ReadError, SymbolNotFound
from core_inspector.orchestrator import ReportOrchestrator, run_report
from core_inspector.port import MemoryPort
from synthetic_image import (
    add_build_info,
    add_hash_container,
    add_lock_infos,
    add_tree_container,
    new_channel,
    new_taskprocessor,
    server_image,
)

STARTED = 1700000000
NOW = STARTED + 86400 + 3661


def _server(with_locks=False):
    b = server_image()
    add_build_info(b, started=STARTED, reloaded=STARTED + 3600)
    add_hash_container(b, "tps_singletons", [
        new_taskprocessor(b, "B"), new_taskprocessor(b, "a"), new_taskprocessor(b, "C"),
    ])
    add_hash_container(b, "channels", [new_channel(b, "PJSIP/100-00000001")])
    add_tree_container(b, "bridges", [])
    if with_locks:
        add_lock_infos(b, [(0x1000, 77, "main", [
            {"file": "a.c", "line_num": 1, "func": "f", "lock_name": "l", "times_locked": 1},
        ])])
    return b


def _sections(text):
    """Split a section stream into {name: [lines]}."""
    out = {}
    current = None
    for line in text.splitlines():
        if line.startswith("<<<SECTION:") and line.endswith(">>>"):
            current = line[len("<<<SECTION:"):-3]
            out[current] = []
        elif current is not None:
            out[current].append(line)
    return out


def _mock_port(live=True, suspended=True):
    port = Mock(spec=MemoryPort)
    port.is_live.return_value = live
    port.suspend.return_value = suspended
    port.signal_info.return_value = None
    port.backtrace.return_value = "#0  0x00007f in poll () from libc.so.6\n"
    port.resolve.side_effect = SymbolNotFound("anything")
    return port


def test_lock_tracking_absent_skips_only_locks():
    """Without lock_infos the locks section is missing and everything else is still produced."""
    port = _server().build()
    out = io.StringIO()
    run = run_report(port, InspectorConfig(utc=True), out=out, reference_time=NOW)

    sections = _sections(out.getvalue())
    assert list(sections) == ["thread1.txt", "brief.txt", "full.txt", "info.txt"]
    locks = next(s for s in run.stages if s.name == "locks")
    assert locks.skipped

    info = sections["info.txt"]
    assert "Version: 18.20.0" in info
    assert "Built by: builder" in info
    assert "System started: 2023-11-14 22:13:20" in info
    assert "System uptime: 1 day, 01:01:01" in info
    assert "Since last reload: 1 day, 00:01:01" in info
    assert "Build options: DEBUG_THREADS, DONT_OPTIMIZE" in info
    assert "Taskprocessors: 3" in info
    assert "Channels: 1" in info
    assert "bridges not found" in info
    assert "1 active channels" in info
    assert "active calls: unavailable" in info

    names = [line.split()[0] for line in info[info.index("Taskprocessors: 3") + 2:][:3]]
    assert names == ["a", "B", "C"]


def test_snapshot_has_no_stacks():
    """Stack sections degrade to a placeholder line."""
    port = _server().build()
    out = io.StringIO()
    run_report(port, options=ReportOptions.only("thread1", "brief"), out=out)
    sections = _sections(out.getvalue())
    assert list(sections) == ["thread1.txt", "brief.txt"]
    assert sections["thread1.txt"][0].startswith("thread1 unavailable:")


def test_locks_section_present():
    port = _server(with_locks=True).build()
    out = io.StringIO()
    run_report(port, InspectorConfig(locks_csv=True), ReportOptions.only("locks"), out=out)
    sections = _sections(out.getvalue())
    assert sections["locks.txt"][0].startswith("thread,status,file")
    assert sections["locks.txt"][1].startswith("0x1000,holding,a.c,1,f,l,MUTEX")


def test_marker_format():
    port = _server().build()
    orchestrator = ReportOrchestrator(port, options=ReportOptions.only("info"))
    text = orchestrator.formatter.render_stream(orchestrator.run())
    assert text.splitlines()[0] == "<<<SECTION:info.txt>>>"


def test_progress_callback():
    port = _server().build()
    calls = []
    orchestrator = ReportOrchestrator(port, options=ReportOptions.only("brief", "info"),
                                      progress_callback=lambda m, c, t: calls.append((m, c, t)))
    orchestrator.run()
    assert calls == [("brief: running", 1, 2), ("info: running", 2, 2)]


def test_verbose_notes(capsys):
    b = server_image()
    add_build_info(b)
    port = b.build()
    out = io.StringIO()
    run_report(port, InspectorConfig(verbose=True), ReportOptions.only("info"), out=out)
    info = _sections(out.getvalue())["info.txt"]
    assert "Analysis notes:" in info
    assert "[inspector]" in capsys.readouterr().err


class TestSuspendResume(unittest.TestCase):
    """Host control bracket around a live target."""

    def test_resumed_once(self):
        port = _mock_port()
        run = ReportOrchestrator(port).run()
        port.suspend.assert_called_once_with()
        port.resume.assert_called_once_with()
        self.assertTrue(run.suspended)
        self.assertTrue(run.resumed)

    def test_resumed_once_when_stage_raises(self):
        port = _mock_port()
        port.backtrace.side_effect = RuntimeError("unwinder crashed")
        run = ReportOrchestrator(port).run()
        port.resume.assert_called_once_with()
        thread1 = run.stages[0]
        self.assertFalse(thread1.ok)
        self.assertEqual(thread1.lines, ("thread1 unavailable: unwinder crashed",))
        self.assertEqual([s.name for s in run.stages], ["thread1", "brief", "full", "locks", "info"])

    def test_resumed_once_when_run_aborts(self):
        """Even an error outside stage isolation still resumes the target."""
        port = _mock_port()
        orchestrator = ReportOrchestrator(port)
        orchestrator._planned_stages = MagicMock(side_effect=KeyboardInterrupt)
        with self.assertRaises(KeyboardInterrupt):
            orchestrator.run()
        port.resume.assert_called_once_with()

    def test_not_resumed_when_already_stopped(self):
        port = _mock_port(suspended=False)
        run = ReportOrchestrator(port).run()
        port.resume.assert_not_called()
        self.assertFalse(run.resumed)

    def test_core_file_not_suspended(self):
        port = _mock_port(live=False)
        ReportOrchestrator(port).run()
        port.suspend.assert_not_called()
        port.resume.assert_not_called()

    def test_suspend_failure_ignored(self):
        port = _mock_port()
        port.suspend.side_effect = RuntimeError("ptrace denied")
        run = ReportOrchestrator(port).run()
        port.resume.assert_not_called()
        self.assertTrue(any("suspend failed" in e for e in run.errors))
        self.assertEqual(len(run.stages), 5)

    def test_signal_info_in_thread1(self):
        port = _mock_port(live=False)
        port.signal_info.return_value = "si_signo = 11\n"
        run = ReportOrchestrator(port, options=ReportOptions.only("thread1")).run()
        lines = run.stages[0].lines
        self.assertEqual(lines[:2], ("Signal information:", "si_signo = 11"))
        port.backtrace.assert_called_once_with("current", full=True)

    def test_all_threads_backtraces(self):
        port = _mock_port(live=False)
        ReportOrchestrator(port, options=ReportOptions.only("brief", "full")).run()
        port.backtrace.assert_any_call("all", full=False)
        port.backtrace.assert_any_call("all", full=True)

    def test_read_error_is_placeholder(self):
        port = _mock_port(live=False)
        port.backtrace.side_effect = ReadError(0, reason="no threads")
        run = ReportOrchestrator(port, options=ReportOptions.only("full")).run()
        self.assertTrue(run.stages[0].lines[0].startswith("full unavailable:"))


if __name__ == "__main__":
    unittest.main()
