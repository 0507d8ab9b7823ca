"""Shared fixtures: storage-history databases built in a temp directory."""

import os
import sqlite3
import sys
from pathlib import Path

import pytest

# Add src directory to path
project_root = str(Path(__file__).parent.parent)
src_dir = os.path.join(project_root, "src")
sys.path.insert(0, src_dir)

from felt import felt_to_bytes32

SCHEMA = """
CREATE TABLE contract_addresses (
    id INTEGER PRIMARY KEY,
    contract_address BLOB NOT NULL
);
CREATE TABLE storage_addresses (
    id INTEGER PRIMARY KEY,
    storage_address BLOB NOT NULL
);
CREATE TABLE storage_updates (
    id INTEGER PRIMARY KEY,
    contract_address_id INTEGER NOT NULL,
    storage_address_id INTEGER NOT NULL,
    storage_value BLOB NOT NULL,
    block_number INTEGER NOT NULL,
    FOREIGN KEY (contract_address_id) REFERENCES contract_addresses(id),
    FOREIGN KEY (storage_address_id) REFERENCES storage_addresses(id)
);
"""


class StorageDbBuilder:
    """Writes storage updates into a fresh database with the expected schema."""

    def __init__(self, path: Path):
        self.path = path
        self.conn = sqlite3.connect(path)
        self.conn.executescript(SCHEMA)
        self._contracts = {}
        self._slots = {}

    def _contract_id(self, contract: int) -> int:
        if contract not in self._contracts:
            cur = self.conn.execute(
                "INSERT INTO contract_addresses (contract_address) VALUES (?)",
                (felt_to_bytes32(contract),),
            )
            self._contracts[contract] = cur.lastrowid
        return self._contracts[contract]

    def _slot_id(self, slot: int) -> int:
        if slot not in self._slots:
            cur = self.conn.execute(
                "INSERT INTO storage_addresses (storage_address) VALUES (?)",
                (felt_to_bytes32(slot),),
            )
            self._slots[slot] = cur.lastrowid
        return self._slots[slot]

    def write(self, contract: int, slot: int, value, block_number: int):
        """Record a storage write; int values are stored as 32-byte blobs."""
        raw = felt_to_bytes32(value) if isinstance(value, int) else value
        self.conn.execute(
            "INSERT INTO storage_updates "
            "(contract_address_id, storage_address_id, storage_value, block_number) "
            "VALUES (?, ?, ?, ?)",
            (self._contract_id(contract), self._slot_id(slot), raw, block_number),
        )
        return self

    def finish(self) -> Path:
        self.conn.commit()
        self.conn.close()
        return self.path


@pytest.fixture
def storage_db(tmp_path):
    """Factory returning a StorageDbBuilder for a new database file."""
    counter = iter(range(1000))

    def _make() -> StorageDbBuilder:
        return StorageDbBuilder(tmp_path / f"storage_{next(counter)}.db")

    return _make

