#!/usr/bin/env python3
"""Resolve Starknet token balances from a storage-history database.

Usage:
    balance-resolver --input addresses.json --db storage.db --csv --json
"""

import argparse
import os
import sqlite3
import sys
import time
from pathlib import Path

from balances import filter_zero_balances, get_balance_map, load_addresses
from felt import ParseError, parse_felt
from helpers import DEFAULT_CHUNK_SIZE, Reporter, default_workers
from output import OutputConfig, write_results
from slots import BALANCES_VARIABLE, SlotCollisionError, selector_for
from storage_db import QueryError, StorageHistory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Resolve token balances for a set of accounts directly from contract storage history"
    )
    parser.add_argument("--input", default=os.getenv("INPUT_FILE"),
                        help="JSON file with 'accounts' and 'tokens' lists (default: $INPUT_FILE)")
    parser.add_argument("--db", default=os.getenv("DB_PATH"),
                        help="SQLite storage-history database (default: $DB_PATH)")
    parser.add_argument("--csv", action="store_true", help="Write results as CSV")
    parser.add_argument("--json", action="store_true", help="Write results as JSON")
    parser.add_argument("--sqlite", action="store_true", help="Write results into a SQLite table")
    parser.add_argument("--output-dir", default=".", help="Directory for result files")
    parser.add_argument("--workers", type=int, default=default_workers(),
                        help="Worker processes for hashing and aggregation (1 = no pool)")
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE,
                        help="Storage records per aggregation task")
    selector = parser.add_mutually_exclusive_group()
    selector.add_argument("--selector", help="Storage variable selector as hex")
    selector.add_argument("--variable", default=BALANCES_VARIABLE,
                          help=f"Storage variable name to derive the selector from (default: {BALANCES_VARIABLE})")
    parser.add_argument("--non-zero-only", action="store_true", help="Drop accounts with a zero balance")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print errors")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    report = Reporter(quiet=args.quiet)

    if not args.input or not args.db:
        print("Both --input (or INPUT_FILE) and --db (or DB_PATH) are required.", file=sys.stderr)
        return 2
    if not os.path.exists(args.input):
        print(f"Input not found: {args.input}", file=sys.stderr)
        return 2
    if args.workers < 1 or args.chunk_size < 1:
        print("--workers and --chunk-size must be positive.", file=sys.stderr)
        return 2

    config = OutputConfig(
        csv=args.csv,
        json=args.json,
        sqlite=args.sqlite,
        output_dir=Path(args.output_dir),
    )

    try:
        selector = parse_felt(args.selector) if args.selector else selector_for(args.variable)
        addresses = load_addresses(args.input)
        report(f"Loaded {len(addresses.accounts)} accounts and {len(addresses.tokens)} tokens")

        with StorageHistory(args.db) as storage:
            storage.check_schema()
            token_map = get_balance_map(
                storage,
                addresses,
                selector=selector,
                workers=args.workers,
                chunk_size=args.chunk_size,
                report=report,
            )

        if args.non_zero_only:
            token_map = filter_zero_balances(token_map)
    except ParseError as e:
        print(f"❌ Invalid input: {e}", file=sys.stderr)
        return 1
    except SlotCollisionError as e:
        print(f"❌ Slot collision: {e}", file=sys.stderr)
        return 1
    except QueryError as e:
        print(f"❌ Storage query failed: {e}", file=sys.stderr)
        return 1

    try:
        start = time.perf_counter()
        write_results(token_map, config, workers=args.workers, report=report)
        report.timing("Output time", start)
    except (OSError, sqlite3.Error) as e:
        print(f"❌ Failed to write results to {config.output_dir}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
