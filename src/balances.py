import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from starknet_py.hash.utils import pedersen_hash

from aggregate import aggregate_records_parallel, aggregation_pool
from felt import ParseError, felt_to_padded_hex, parse_felt
from helpers import DEFAULT_CHUNK_SIZE, Reporter, default_workers
from slots import BALANCES_SELECTOR, HashFn, build_account_index
from storage_db import StorageHistory

TokenBalanceMap = Dict[int, int]
ResultSet = Dict[int, TokenBalanceMap]


@dataclass
class Addresses:
    """Accounts and token contracts to resolve, as field elements."""
    accounts: List[int] = field(default_factory=list)
    tokens: List[int] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "Addresses":
        if not isinstance(data, dict):
            raise ParseError("Address file must hold a JSON object with 'accounts' and 'tokens'")
        return cls(
            accounts=_parse_list(data, "accounts"),
            tokens=_parse_list(data, "tokens"),
        )


def _parse_list(data: dict, key: str) -> List[int]:
    values = data.get(key)
    if not isinstance(values, list):
        raise ParseError(f"Expected a list under '{key}'")
    parsed = []
    for i, value in enumerate(values):
        try:
            parsed.append(parse_felt(value))
        except ParseError as e:
            raise ParseError(f"{key}[{i}]: {e}") from e
    return parsed


def load_addresses(path: Union[str, Path]) -> Addresses:
    """Read {"accounts": [...], "tokens": [...]} from a JSON file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Failed to parse {path}: {e}") from e
    except OSError as e:
        raise ParseError(f"Failed to read {path}: {e}") from e
    return Addresses.from_dict(data)


def filter_zero_balances(token_map: ResultSet) -> ResultSet:
    return {
        token: {account: balance for account, balance in balances.items() if balance != 0}
        for token, balances in token_map.items()
    }


def get_balance_map(
    storage: StorageHistory,
    addresses: Addresses,
    selector: int = BALANCES_SELECTOR,
    workers: Optional[int] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    hash_fn: HashFn = pedersen_hash,
    report: Optional[Reporter] = None,
) -> ResultSet:
    """Resolve the latest balance of every account for every token.

    Tokens are queried one after another on the storage connection; slot
    derivation and the per-token join run on `workers` processes.
    """
    report = report or Reporter(quiet=True)
    if workers is None:
        workers = default_workers()
    total_start = time.perf_counter()

    hashing_start = time.perf_counter()
    index = build_account_index(addresses.accounts, selector, workers=workers, hash_fn=hash_fn)
    report.timing("Hashing time", hashing_start)
    report(f"Resolving {len(addresses.tokens)} tokens for {len(index)} accounts using {workers} workers")

    token_map: ResultSet = {}
    with aggregation_pool(index, workers) as pool:
        for token in addresses.tokens:
            if token in token_map:
                continue
            # Records stream from the cursor straight into the workers
            token_start = time.perf_counter()
            records = storage.latest_values(token)
            token_map[token] = aggregate_records_parallel(records, index, workers, chunk_size, executor=pool)
            report.timing("Query and BalanceMap time", token_start)
            report(f"#### Token: {felt_to_padded_hex(token)} - {len(token_map[token])} balances ######")

    report.timing("Total resolution time", total_start)
    return token_map
