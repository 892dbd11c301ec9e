#!/usr/bin/env python3
"""
Core Inspector - Offline Entry Point

Renders reports from a JSON image description without a debugger.
"""

import sys
import argparse
from pathlib import Path

# Add core_inspector to path
sys.path.insert(0, str(Path(__file__).parent))

# Load .env before reading CORE_INSPECTOR_* settings
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

SECTIONS = ('thread1', 'brief', 'full', 'locks', 'info')


def build_parser():
    parser = argparse.ArgumentParser(
        description='Core Inspector - Diagnostic reports from server process images',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full section stream from an image description
  %(prog)s report image.json

  # Same image, bytes served from a minidump
  %(prog)s report image.json --minidump crash.dmp

  # Only the info section, timestamps in UTC
  %(prog)s report image.json --only info --utc

  # Lock table as CSV
  %(prog)s locks image.json --csv

  # Run the test suite
  %(prog)s test
        """
    )

    parser.add_argument(
        'command',
        choices=['report', 'locks', 'test'],
        help='Command to execute'
    )

    parser.add_argument(
        'image',
        nargs='?',
        help='Path to JSON image description'
    )

    parser.add_argument(
        '--minidump',
        help='Read image bytes from this minidump instead of the description'
    )

    parser.add_argument(
        '--only',
        nargs='+',
        choices=SECTIONS,
        help='Produce only these sections (report command)'
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
        help='Output file for results (default: console)'
    )
    return parser


def _write(lines, output):
    if output:
        with open(output, 'w', encoding='utf-8') as f:
            for line in lines:
                f.write(line + "\n")
        print(f"\nResults saved to: {output}")
    else:
        for line in lines:
            print(line)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'test':
        print("Running test suite...")
        import pytest
        sys.exit(pytest.main(['tests/', '-v']))

    if not args.image:
        parser.error(f"{args.command} command requires image argument")

    from core_inspector import InspectorConfig, ReportOptions, load_image_description, run_report
    from core_inspector.errors import FeatureUnavailable
    from core_inspector.formatter import ReportFormatter
    from core_inspector.locks import extract_lock_table

    config = InspectorConfig.from_env().with_overrides(
        locks_csv=args.csv, utc=args.utc, verbose=args.verbose)

    try:
        port = load_image_description(args.image, args.minidump, config.max_string_length)
    except (OSError, ValueError, KeyError, RuntimeError) as e:
        print(f"[!] Cannot load image {args.image}: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == 'report':
        options = ReportOptions.only(*args.only) if args.only else ReportOptions()
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                run = run_report(port, config, options, f)
            print(f"\nResults saved to: {args.output}")
        else:
            run = run_report(port, config, options)
        if config.verbose:
            print(f"[inspector] {len(run.sections)} sections, {len(run.errors)} notes", file=sys.stderr)

    elif args.command == 'locks':
        formatter = ReportFormatter(utc=config.utc)
        try:
            table = extract_lock_table(port, config)
        except FeatureUnavailable as e:
            print(f"[!] {e}", file=sys.stderr)
            sys.exit(2)
        lines = formatter.render_locks_csv(table) if config.locks_csv else formatter.render_locks(table)
        _write(lines, args.output)
        if config.verbose:
            for err in table.errors:
                print(f"[inspector] {err}", file=sys.stderr)


if __name__ == '__main__':
    main()
