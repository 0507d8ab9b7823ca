import json
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from felt import felt_to_hex, felt_to_padded_hex
from helpers import Reporter, fan_out

CSV_FILENAME = "token_map.csv"
JSON_FILENAME = "token_map.json"
SQLITE_FILENAME = "token_map.db"
SQLITE_TABLE = "token_map"
COLUMNS = ["Token", "Account", "Balance"]

Row = Tuple[str, str, str]


@dataclass
class OutputConfig:
    """Which result formats to write, and where."""
    csv: bool = False
    json: bool = False
    sqlite: bool = False
    output_dir: Path = Path(".")

    def has_any_output(self) -> bool:
        return self.csv or self.json or self.sqlite


def _format_token_rows(item: Tuple[int, Dict[int, int]]) -> List[Row]:
    token, balances = item
    token_hex = felt_to_padded_hex(token)
    return [
        (token_hex, felt_to_padded_hex(account), str(balance))
        for account, balance in sorted(balances.items())
    ]


def format_rows(token_map: Dict[int, Dict[int, int]], workers: int = 1) -> List[Row]:
    """Flatten the result set into (token, account, balance) text rows.

    Tokens are formatted independently, one task per token; the row order is
    token then account, ascending.
    """
    items = sorted(token_map.items())
    parts = fan_out(_format_token_rows, items, workers=min(workers, len(items)))
    return [row for part in parts for row in part]


def rows_to_frame(rows: List[Row]) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=COLUMNS, dtype=str)


def store_map_as_csv(rows: List[Row], path: Path) -> Path:
    rows_to_frame(rows).to_csv(path, index=False)
    return path


def store_map_as_json(token_map: Dict[int, Dict[int, int]], path: Path) -> Path:
    data = {
        felt_to_hex(token): {
            felt_to_hex(account): felt_to_hex(balance)
            for account, balance in sorted(balances.items())
        }
        for token, balances in sorted(token_map.items())
    }
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    return path


def store_map_in_sqlite(rows: List[Row], path: Path) -> Path:
    frame = rows_to_frame(rows).rename(columns=str.lower)
    conn = sqlite3.connect(path)
    try:
        conn.execute(
            f"""CREATE TABLE IF NOT EXISTS {SQLITE_TABLE} (
                token TEXT NOT NULL,
                account TEXT NOT NULL,
                balance TEXT NOT NULL
            )"""
        )
        with conn:
            frame.to_sql(SQLITE_TABLE, conn, if_exists="append", index=False)
    finally:
        conn.close()
    return path


def write_results(
    token_map: Dict[int, Dict[int, int]],
    config: OutputConfig,
    workers: int = 1,
    report: Optional[Reporter] = None,
) -> List[Path]:
    """Write the result set in every enabled format; returns the written paths."""
    report = report or Reporter(quiet=True)
    if not config.has_any_output():
        report("No output format selected. Use --csv, --json, or --sqlite to specify output formats.")
        return []

    total_records = sum(len(balances) for balances in token_map.values())
    report(f"Writing {total_records} total records across {len(token_map)} tokens")

    output_dir = Path(config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written = []

    rows = None
    if config.csv or config.sqlite:
        start = time.perf_counter()
        rows = format_rows(token_map, workers=workers)
        report.timing("Row formatting time", start)

    if config.csv:
        start = time.perf_counter()
        written.append(store_map_as_csv(rows, output_dir / CSV_FILENAME))
        report.timing(f"Results written to {CSV_FILENAME} in", start)

    if config.json:
        start = time.perf_counter()
        written.append(store_map_as_json(token_map, output_dir / JSON_FILENAME))
        report.timing(f"Results written to {JSON_FILENAME} in", start)

    if config.sqlite:
        start = time.perf_counter()
        written.append(store_map_in_sqlite(rows, output_dir / SQLITE_FILENAME))
        report.timing(f"Results written to {SQLITE_FILENAME} in", start)

    return written
