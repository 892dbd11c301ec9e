"""Tests for the snapshot port, JSON image descriptions, configuration and the CLI."""
import json
import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core_inspector.config import InspectorConfig, ReportOptions
from core_inspector.errors import FieldMissing, ReadError, SymbolNotFound, TypeMismatch
from core_inspector.extractors import extract_bridges, extract_taskprocessors
from core_inspector.image import ImageBuilder, TypeRegistry, load_image_description
from core_inspector.port import MemoryHandle
from synthetic_image import (
    add_hash_container,
    add_lock_infos,
    add_tree_container,
    new_bridge,
    new_taskprocessor,
    server_image,
)


# ============================================================================
# TYPES AND PORT
# ============================================================================

def test_struct_layout_alignment():
    types = TypeRegistry()
    s = types.add_struct("struct mixed", [("c", "char"), ("p", "void *"), ("i", "int")])
    assert s.fields == {"c": (0, "char"), "p": (8, "void *"), "i": (16, "int")}
    assert s.size == 24


def test_type_spelling_normalized():
    types = TypeRegistry()
    assert types.normalize("struct  foo*") == "struct foo *"
    assert types.sizeof("char *[4]") == 32
    assert types.sizeof("int[3]") == 12


def test_unknown_type():
    with pytest.raises(TypeMismatch):
        TypeRegistry().lookup("struct nope")


def test_port_reads():
    b = ImageBuilder()
    b.struct("struct item", [("id", "int"), ("label", "char *"), ("tag", "char[8]"), ("next", "struct item *")])
    second = b.new("struct item", {"id": -3, "label": "two", "tag": "bb"})
    first = b.new("struct item", {"id": 1, "label": "one", "tag": "toolongtag", "next": second})
    b.symbol("head", "struct item", first)
    port = b.build()

    head = port.resolve("head")
    assert port.read_integer(port.field(head, "id")) == 1
    assert port.read_string(port.field(head, "label")) == b"one"
    assert port.read_char_array(port.field(head, "tag")) == b"toolong"
    assert port.read_integer(port.field(head, "next.id")) == -3
    assert port.read_char_array(port.field(head, "next.tag")) == b"bb"
    assert port.read_address(port.field(head, "next.next")) == 0


def test_port_errors():
    b = ImageBuilder()
    b.struct("struct item", [("id", "int"), ("next", "struct item *")])
    item = b.new("struct item", {"next": 0x10})
    b.symbol("head", "struct item", item)
    port = b.build()
    head = port.resolve("head")

    with pytest.raises(SymbolNotFound):
        port.resolve("missing")
    with pytest.raises(FieldMissing):
        port.field(head, "nope")
    with pytest.raises(ReadError):
        port.read_integer(port.field(head, "next.id"))
    with pytest.raises(TypeMismatch):
        port.read_address(port.field(head, "id"))
    with pytest.raises(TypeMismatch):
        port.cast(head, "struct item *")


def test_null_deref():
    b = ImageBuilder()
    b.struct("struct item", [("next", "struct item *")])
    b.symbol("head", "struct item", b.new("struct item"))
    port = b.build()
    with pytest.raises(ReadError):
        port.deref(port.field(port.resolve("head"), "next"))


def test_snapshot_is_not_live():
    port = ImageBuilder().build()
    assert not port.is_live()
    assert not port.suspend()
    assert port.signal_info() is None
    with pytest.raises(ReadError):
        port.backtrace("all")


def test_unmapped_hole():
    b = ImageBuilder()
    b.struct("struct item", [("id", "int")])
    item = b.new("struct item", {"id": 9})
    b.unmap(item, 4)
    port = b.build()
    with pytest.raises(ReadError):
        port.read_integer(MemoryHandle(item, "int"))


# ============================================================================
# JSON IMAGE DESCRIPTIONS
# ============================================================================

def _write_description(b, tmp_path):
    path = tmp_path / "image.json"
    path.write_text(json.dumps(b.to_description()), encoding="utf-8")
    return path


def test_description_round_trip(tmp_path):
    """A saved description extracts the same tables as the in-memory image."""
    b = server_image()
    add_hash_container(b, "tps_singletons", [new_taskprocessor(b, n, processed=i)
                                             for i, n in enumerate(["B", "a", "C"])])
    add_tree_container(b, "bridges", [new_bridge(b, "z"), new_bridge(b, "y")])
    path = _write_description(b, tmp_path)

    port = load_image_description(path)
    tps = extract_taskprocessors(port)
    assert [(r["name"], r["processed"]) for r in tps.rows] == [("a", 1), ("B", 0), ("C", 2)]
    assert [r["uniqueid"] for r in extract_bridges(port).rows] == ["y", "z"]
    assert port.types.lookup("ast_mutex_t").name == "struct ast_mutex_info"


# ============================================================================
# CONFIGURATION
# ============================================================================

def test_config_from_env():
    config = InspectorConfig.from_env({
        "CORE_INSPECTOR_UTC": "yes",
        "CORE_INSPECTOR_MAX_TREE_DEPTH": "0x10",
        "CORE_INSPECTOR_MAX_CHAIN_LENGTH": "bogus",
        "CORE_INSPECTOR_MAX_STRING_LENGTH": "-5",
        "CORE_INSPECTOR_VERBOSE": "",
    })
    assert config.utc is True
    assert config.max_tree_depth == 16
    assert config.max_chain_length == 1_000_000
    assert config.max_string_length == 4096
    assert config.verbose is False


def test_config_overrides():
    config = InspectorConfig(utc=True).with_overrides(utc=None, locks_csv=True, unknown=1)
    assert config.utc is True
    assert config.locks_csv is True


def test_report_options_only():
    options = ReportOptions.only("info", "locks")
    assert (options.thread1, options.brief, options.full, options.locks, options.info) == \
        (False, False, False, True, True)
    with pytest.raises(ValueError):
        ReportOptions.only("everything")


# ============================================================================
# CLI
# ============================================================================

@pytest.fixture
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("CORE_INSPECTOR_"):
            monkeypatch.delenv(name)


def test_cli_locks_csv(tmp_path, capsys, clean_env):
    import core_inspector_cli

    b = server_image()
    add_lock_infos(b, [(0x2000, 5, "worker", [
        {"file": "x.c", "line_num": 3, "func": "g", "lock_name": "m", "times_locked": 1, "pending": 1},
    ])])
    path = _write_description(b, tmp_path)

    core_inspector_cli.main(["locks", str(path), "--csv"])
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("thread,status,file")
    assert lines[1].startswith("0x2000,waiting,x.c,3,g,m,MUTEX")


def test_cli_locks_absent(tmp_path, capsys, clean_env):
    import core_inspector_cli

    path = _write_description(server_image(), tmp_path)
    with pytest.raises(SystemExit) as exc:
        core_inspector_cli.main(["locks", str(path)])
    assert exc.value.code == 2
    assert "lock tracking" in capsys.readouterr().err


def test_cli_report_to_file(tmp_path, clean_env):
    import core_inspector_cli

    b = server_image()
    add_hash_container(b, "tps_singletons", [new_taskprocessor(b, "only-one")])
    path = _write_description(b, tmp_path)
    output = tmp_path / "report.txt"

    core_inspector_cli.main(["report", str(path), "--only", "info", "--output", str(output)])
    text = output.read_text(encoding="utf-8")
    assert text.startswith("<<<SECTION:info.txt>>>\n")
    assert "Taskprocessors: 1" in text
    assert "channels not found" in text


def test_cli_requires_image(clean_env):
    import core_inspector_cli

    with pytest.raises(SystemExit):
        core_inspector_cli.main(["report"])


def test_gdb_command_arguments(tmp_path, clean_env):
    """The in-debugger command accepts the same switches as the CLI."""
    import coredumper

    b = server_image()
    add_hash_container(b, "tps_singletons", [new_taskprocessor(b, "only-one")])
    output = tmp_path / "report.txt"
    code = coredumper.run_from_args(["--only", "info", "--utc", "--output", str(output)], port=b.build())
    assert code == 0
    assert "Taskprocessors: 1" in output.read_text(encoding="utf-8")


def test_gdb_command_bad_arguments(clean_env):
    import coredumper

    assert coredumper.run_from_args(["--only", "everything"], port=server_image().build()) == 2


def test_gdb_launcher_finds_its_package():
    """Sourcing the launcher makes the package importable from its own directory."""
    import coredumper

    here = str(Path(coredumper.__file__).resolve().parent)
    assert here in sys.path


@pytest.mark.parametrize("module", ["coredumper", "core_inspector_cli"])
def test_csv_help_describes_rows(module):
    """The --csv help names the header row and the failed-lock rows."""
    parser = __import__(module).build_parser()
    text = " ".join(parser.format_help().split())
    assert "a header row first" in text
    assert "held, waiting or failed lock" in text
