"""Tests for lock table extraction and its text/CSV renderings."""
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core_inspector.errors import FeatureUnavailable
from core_inspector.formatter import LOCK_CSV_COLUMNS, ReportFormatter
from core_inspector.locks import extract_lock_table, lock_status
from synthetic_image import add_lock_infos, server_image

MAIN_THREAD = 0x7F0000001000
OTHER_THREAD = 0x7F0000002000


def _locked_image():
    b = server_image()
    add_lock_infos(b, [
        (MAIN_THREAD, 1234, "main", [
            {
                "file": "channel.c", "line_num": 2100, "func": "ast_hangup",
                "lock_name": "chan", "times_locked": 2, "type": 0, "pending": 0,
                "track": {"reentrancy": 2, "file[0]": "channel.c", "lineno[0]": 2090,
                          "func[0]": "ast_hangup", "thread_id[0]": MAIN_THREAD},
            },
            {
                "file": "bridge.c", "line_num": 55, "func": "bridge_do",
                "lock_name": "bridge", "times_locked": 1, "type": 0, "pending": 1,
                "track": {"reentrancy": 1, "file[0]": "bridge_channel.c", "lineno[0]": 100,
                          "func[0]": "bridge_channel_lock", "thread_id[0]": OTHER_THREAD},
            },
            {
                "file": "config.c", "line_num": 7, "func": "config_load",
                "lock_name": "cfg_lock", "times_locked": 1, "type": 2, "pending": -1,
                "suspended": 1,
            },
        ]),
        (OTHER_THREAD, 1235, "netconsole", []),
    ])
    return b


def test_lock_status():
    assert lock_status(-1) == "failed"
    assert lock_status(1) == "waiting"
    assert lock_status(0) == "holding"
    assert lock_status(None) == "holding"


def test_lock_tracking_absent():
    """No lock_infos symbol means the feature is not built in."""
    port = server_image().build()
    with pytest.raises(FeatureUnavailable):
        extract_lock_table(port)


def test_extract_lock_table():
    port = _locked_image().build()
    table = extract_lock_table(port)
    assert table.errors == ()
    assert [t.thread_name for t in table.threads] == ["main", "netconsole"]
    assert table.lock_count == 3

    held, waiting, failed = table.threads[0].locks
    assert held.status == "holding"
    assert held.lock_type == "MUTEX"
    assert held.reentrancy == 2
    assert not held.shows_first_holder

    assert waiting.status == "waiting"
    assert waiting.shows_first_holder
    assert waiting.first_holder.file == "bridge_channel.c"
    assert waiting.first_holder.line == 100
    assert waiting.first_holder.thread == OTHER_THREAD

    assert failed.status == "failed"
    assert failed.lock_type == "WRLOCK"
    assert failed.suspended
    assert failed.first_holder is None


def test_render_locks_text():
    port = _locked_image().build()
    lines = ReportFormatter().render_locks(extract_lock_table(port))
    assert "=== Currently Held Locks" in lines
    assert f"=== Thread ID: 0x{MAIN_THREAD:x} LWP:1234 (main)" in lines
    # threads with no locks are not listed
    assert not any("netconsole" in line for line in lines)

    waiting = next(line for line in lines if "Lock #1" in line)
    assert waiting.startswith("=== ---> Waiting for Lock #1 (bridge.c): MUTEX 55 bridge_do bridge 0x")
    assert waiting.endswith("(1)")
    holder = lines[lines.index(waiting) + 1]
    assert holder == (f"=== --- ---> Locked Here: bridge_channel.c line 100 (bridge_channel_lock) "
                      f"by thread 0x{OTHER_THREAD:x}, re-entrancy 1")

    failed = next(line for line in lines if "Lock #2" in line)
    assert failed.startswith("=== ---> Tried and failed to get Lock #2 (config.c): WRLOCK 7 config_load cfg_lock")
    assert failed.endswith("(1 - suspended)")


def test_render_locks_csv():
    port = _locked_image().build()
    lines = ReportFormatter().render_locks_csv(extract_lock_table(port))
    assert lines[0] == ",".join(LOCK_CSV_COLUMNS)
    assert len(lines) == 4

    held = lines[1].split(",")
    assert held[:7] == [f"0x{MAIN_THREAD:x}", "holding", "channel.c", "2100", "ast_hangup", "chan", "MUTEX"]
    assert held[10] == "2"
    assert len(held) == 11

    waiting = lines[2].split(",")
    assert len(waiting) == 15
    assert waiting[11:] == ["bridge_channel.c", "100", "bridge_channel_lock", f"0x{OTHER_THREAD:x}"]

    failed = lines[3].split(",")
    assert failed[1] == "failed"
    assert failed[7] == "0x0"
    assert failed[9] == "1"
    assert failed[10] == ""


def test_lock_list_cycle():
    b = server_image()
    add_lock_infos(b, [(1, 10, "a", []), (2, 11, "b", [])])
    port = b.build()
    first = port.read_address(port.field(port.resolve("lock_infos"), "first"))
    b.set(first, "struct thr_lock_info", "entry.next", first)
    port = b.build()
    table = extract_lock_table(port)
    assert [t.thread_name for t in table.threads] == ["a"]
    assert any("cycle detected" in e for e in table.errors)
