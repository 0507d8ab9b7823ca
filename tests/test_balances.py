import json
import os
import sys
from pathlib import Path

import pytest

project_root = str(Path(__file__).parent.parent)
src_dir = os.path.join(project_root, "src")
sys.path.insert(0, src_dir)

from starknet_py.hash.utils import pedersen_hash

from balances import Addresses, filter_zero_balances, get_balance_map, load_addresses
from felt import ParseError
import helpers
from slots import BALANCES_SELECTOR
from storage_db import StorageHistory

SEL = 0x5E1
T1 = 0x71
T2 = 0x72
AA = 0xAA
BB = 0xBB

# Fixture slots in place of Pedersen
FIXTURE_SLOTS = {(SEL, AA): 0x1234, (SEL, BB): 0x4321}


def fixture_hash(selector, account):
    return FIXTURE_SLOTS[(selector, account)]


def test_end_to_end_example(storage_db):
    path = storage_db().write(T1, 0x1234, 0x64, 5).write(T1, 0x1234, 0x96, 9).finish()
    addresses = Addresses(accounts=[AA], tokens=[T1])
    with StorageHistory(path) as storage:
        result = get_balance_map(storage, addresses, selector=SEL, workers=1, hash_fn=fixture_hash)
    assert result == {T1: {AA: 0x96}}


def test_multi_token_isolation(storage_db):
    path = (
        storage_db()
        .write(T1, 0x1234, 10, 1)
        .write(T2, 0x1234, 20, 2)
        .write(T2, 0x4321, 30, 2)
        .finish()
    )
    addresses = Addresses(accounts=[AA, BB], tokens=[T1, T2])
    with StorageHistory(path) as storage:
        result = get_balance_map(storage, addresses, selector=SEL, workers=1, hash_fn=fixture_hash)
    assert result == {T1: {AA: 10}, T2: {AA: 20, BB: 30}}


def test_token_without_storage_has_empty_map(storage_db):
    path = storage_db().write(T1, 0x1234, 10, 1).finish()
    addresses = Addresses(accounts=[AA], tokens=[T1, 0x9999])
    with StorageHistory(path) as storage:
        result = get_balance_map(storage, addresses, selector=SEL, workers=1, hash_fn=fixture_hash)
    assert result == {T1: {AA: 10}, 0x9999: {}}


def test_malformed_stored_value_resolves_to_zero(storage_db):
    path = storage_db().write(T1, 0x1234, b"", 3).write(T1, 0x4321, 7, 3).finish()
    addresses = Addresses(accounts=[AA, BB], tokens=[T1])
    with StorageHistory(path) as storage:
        result = get_balance_map(storage, addresses, selector=SEL, workers=1, hash_fn=fixture_hash)
    assert result == {T1: {AA: 0, BB: 7}}


def test_pedersen_slots_and_determinism(storage_db):
    token = 0x0102030405060708090A0B0C0D0E0F101112131415161718191A1B1C1D1E1F20
    slot_1 = 0x00FB35D68FAA85E6A5D2F4EC1BB996928942AB831783B0220D7074CEF42A0DE1
    account_1 = 0x0234567890ABCDCD1234567890ABCDEF1234567890ABCDEF1234567890ABCDED
    path = (
        storage_db()
        .write(token, slot_1, 1000, 100)
        .write(token, 0xFFFF, 2000, 100)
        .finish()
    )
    addresses = Addresses.from_dict({
        "accounts": ["0x1234567890abcdef1234567890abcdef1234567890abcdef1234567890abcdef"],
        "tokens": [hex(token)],
    })
    assert addresses.accounts == [account_1]

    with StorageHistory(path) as storage:
        first = get_balance_map(storage, addresses, selector=BALANCES_SELECTOR, workers=2)
        second = get_balance_map(storage, addresses, selector=BALANCES_SELECTOR, workers=1)
    assert first == second == {token: {account_1: 1000}}


def test_duplicate_tokens_are_resolved_once(storage_db):
    path = storage_db().write(T1, 0x1234, 10, 1).finish()
    addresses = Addresses(accounts=[AA], tokens=[T1, T1])
    with StorageHistory(path) as storage:
        result = get_balance_map(storage, addresses, selector=SEL, workers=1, hash_fn=fixture_hash)
    assert result == {T1: {AA: 10}}


def test_filter_zero_balances():
    assert filter_zero_balances({T1: {AA: 0, BB: 5}, T2: {AA: 0}}) == {T1: {BB: 5}, T2: {}}


def test_load_addresses(tmp_path):
    path = tmp_path / "addresses.json"
    path.write_text(json.dumps({"accounts": ["0xaa", "bb"], "tokens": ["0x71"]}))
    addresses = load_addresses(path)
    assert addresses.accounts == [AA, BB]
    assert addresses.tokens == [T1]


@pytest.mark.parametrize("content", [
    '{"accounts": ["0xzz"], "tokens": []}',
    '{"accounts": [], "tokens": ["0x1", 12.5]}',
    '{"accounts": []}',
    '["0x1"]',
    "not json",
])
def test_load_addresses_rejects_malformed_input(tmp_path, content):
    path = tmp_path / "addresses.json"
    path.write_text(content)
    with pytest.raises(ParseError):
        load_addresses(path)


def test_one_aggregation_pool_per_run(storage_db, monkeypatch):
    pools = []

    class CountingPool(helpers.ProcessPoolExecutor):
        def __init__(self, *args, **kwargs):
            pools.append(kwargs.get("initargs", ()))
            super().__init__(*args, **kwargs)

    monkeypatch.setattr(helpers, "ProcessPoolExecutor", CountingPool)

    accounts = list(range(0x100, 0x10A))
    tokens = [T1, T2, 0x73]
    builder = storage_db()
    for n, token in enumerate(tokens):
        for account in accounts:
            builder.write(token, pedersen_hash(BALANCES_SELECTOR, account), account + n, 1)
        builder.write(token, 0xFFFF, 1, 1)
    path = builder.finish()

    addresses = Addresses(accounts=accounts, tokens=tokens)
    with StorageHistory(path) as storage:
        result = get_balance_map(storage, addresses, selector=BALANCES_SELECTOR, workers=2, chunk_size=3)

    # One pool for hashing, one for every token's aggregation
    assert len(pools) == 2
    shipped = [initargs for initargs in pools if initargs]
    assert len(shipped) == 1
    assert len(shipped[0][0]) == len(accounts)
    assert result == {token: {a: a + n for a in accounts} for n, token in enumerate(tokens)}


def test_load_addresses_rejects_unreadable_input(tmp_path):
    binary = tmp_path / "addresses.json"
    binary.write_bytes(b'{"accounts": ["\xff"]}')
    with pytest.raises(ParseError):
        load_addresses(binary)
    with pytest.raises(ParseError):
        load_addresses(tmp_path)
