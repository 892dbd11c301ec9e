"""Launcher for the in-debugger report.

Source this file from gdb (``source coredumper.py``) after loading a core
file or attaching to a process; it registers the ``core-report`` command::

    (gdb) core-report
    (gdb) core-report --only info locks --csv --output report.txt
"""

import argparse
import sys
import traceback
from pathlib import Path

# gdb's `source` does not put this directory on the import path
sys.path.insert(0, str(Path(__file__).resolve().parent))

# Load .env before any core_inspector imports (so CORE_INSPECTOR_* are set)
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

from core_inspector import InspectorConfig, ReportOptions, run_report
from core_inspector.gdb_port import HAS_GDB, GdbMemoryPort, gdb

SECTIONS = ("thread1", "brief", "full", "locks", "info")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="core-report",
        description="Write the diagnostic section stream for the current inferior",
    )
    parser.add_argument(
        '--only',
        nargs='+',
        choices=SECTIONS,
        help='Produce only these sections (default: all)'
    )
    parser.add_argument(
        '--csv',
        action='store_true',
        default=None,
        help=('Render the lock table as comma-separated rows: a header row first, '
              'then one row per held, waiting or failed lock')
    )
    parser.add_argument(
        '--utc',
        action='store_true',
        default=None,
        help='Render timestamps in UTC'
    )
    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        default=None,
        help='Print progress and analysis notes'
    )
    parser.add_argument(
        '--output',
        '-o',
        help='Output file for the section stream (default: console)'
    )
    return parser


def run_from_args(argv, port=None) -> int:
    """Parse ``argv`` and run one report. Returns a process-style exit code."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return int(e.code or 0)

    config = InspectorConfig.from_env().with_overrides(
        locks_csv=args.csv, utc=args.utc, verbose=args.verbose)
    options = ReportOptions.only(*args.only) if args.only else ReportOptions()
    port = port or GdbMemoryPort(max_string_length=config.max_string_length)

    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            run = run_report(port, config, options, f)
        print(f"[+] Report written to: {args.output}", file=sys.stderr)
    else:
        run = run_report(port, config, options)
    if config.verbose:
        print(f"[inspector] {len(run.sections)} sections, {len(run.errors)} notes", file=sys.stderr)
    return 0


if HAS_GDB:
    class CoreReportCommand(gdb.Command):
        """Write the diagnostic section stream for the current inferior.

Usage: core-report [--only SECTION...] [--csv] [--utc] [--verbose] [--output FILE]"""

        def __init__(self):
            super().__init__("core-report", gdb.COMMAND_DATA)

        def invoke(self, argument, from_tty):
            try:
                run_from_args(gdb.string_to_argv(argument))
            except Exception as e:
                traceback.print_exc()
                raise gdb.GdbError(f"core-report failed: {e}")

    CoreReportCommand()


def main():
    if not HAS_GDB:
        print("coredumper.py must be sourced from gdb: (gdb) source coredumper.py", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
