#!/usr/bin/env python3
"""
Profile Analyzer - Main Entry Point

Summarizes a sampled call-stack trace into hot-function leaderboards and
per-process call trees.
"""

import argparse
import json
import os
import sys

from profile_analyzer.analyzer import analyze_trace
from profile_analyzer.config import load_config
from profile_analyzer.errors import TraceSourceError
from profile_analyzer.log_sink import LogSink, safe_print
from profile_analyzer.report import render_report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='profile-analyzer',
        description='Profile Analyzer - hot functions and call trees from sampled stacks',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s trace.jsonl --top 50 --pid 4036
  %(prog)s trace.jsonl --symbols "srv*C:\\symbols*https://symbols.example.com/"
  %(prog)s trace.jsonl --verbose
  %(prog)s trace.jsonl --timeout 30     (skip modules whose symbols stop loading for 30 seconds)
  %(prog)s trace.jsonl --skip-size 100  (skip modules if symbols exceed 100 MB)
        """
    )

    parser.add_argument('trace_file', help='Path to the trace event file (.jsonl)')
    parser.add_argument('--top', type=int, default=50, help='Rows per leaderboard (default: 50)')
    parser.add_argument('--pid', '-p', type=int, help='Only analyze this process')
    parser.add_argument('--symbols', '-s', help='Symbol path, e.g. "srv*CACHE*URL;DIR"')
    parser.add_argument('--symbol-cache', help='Directory for downloaded symbol maps')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show symbol loading details')
    parser.add_argument('--timeout', '-t', type=float,
                        help='Skip a module after this many seconds without symbol download progress (default: 30)')
    parser.add_argument('--skip-size', '--max-size', dest='skip_size', type=float,
                        help='Skip a module once its symbols exceed this many MB')
    parser.add_argument('--depth', type=int, default=10, help='Maximum call tree depth (default: 10)')
    parser.add_argument('--no-progress', action='store_true', help='Do not show the download spinner')
    parser.add_argument('--output', '-o', help='Also write a JSON summary to this file')
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args)
    sink = LogSink(verbose=config.verbose)

    if not os.path.exists(config.trace_path):
        safe_print(f"Error: File not found: {config.trace_path}")
        return 1

    safe_print("=== Profile Analyzer ===\n")
    safe_print(f"File: {config.trace_path}")
    safe_print(f"Size: {os.path.getsize(config.trace_path) // 1024 // 1024} MB\n")
    if config.symbol_path:
        sink.info("symbol", f"Using symbol path: {config.symbol_path}")
    else:
        sink.debug("symbol", "No symbol path specified. Use --symbols or set _NT_SYMBOL_PATH.")

    try:
        result = analyze_trace(config, sink=sink)
    except TraceSourceError as e:
        safe_print(f"Error: {e}")
        return 1

    safe_print("")
    safe_print(render_report(result.report, top=config.top_count,
                             process_id=config.filter_pid, tree_depth=config.tree_depth))

    if config.output:
        data = result.report.to_dict(config.top_count)
        data['load_outcomes'] = {
            name: {'state': o.state.value, 'reason': o.reason, 'loaded_mb': round(o.loaded_mb, 2)}
            for name, o in result.load_outcomes.items()
        }
        data['resolution'] = result.resolution
        try:
            with open(config.output, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            safe_print(f"\nError: cannot write {config.output}: {e}")
            return 1
        safe_print(f"\n[OK] Full results saved to: {config.output}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
