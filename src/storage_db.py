import sqlite3
from pathlib import Path
from typing import Iterator, NamedTuple, Optional, Union

from felt import felt_to_bytes32, felt_to_padded_hex

REQUIRED_TABLES = ("contract_addresses", "storage_addresses", "storage_updates")
FETCH_BATCH_SIZE = 10_000

CONTRACT_ID_QUERY = "SELECT id FROM contract_addresses WHERE contract_address = ?"

# One row per slot ever written under the contract. SQLite returns the bare
# columns of the row holding MAX(block_number), so each slot reports the
# value of its most recent write.
LATEST_VALUES_QUERY = """
    SELECT
        hex(contract_addresses.contract_address),
        hex(storage_addresses.storage_address),
        hex(storage_updates.storage_value),
        MAX(storage_updates.block_number)
    FROM
        storage_updates
        JOIN storage_addresses
            ON storage_addresses.id = storage_updates.storage_address_id
        JOIN contract_addresses
            ON contract_addresses.id = storage_updates.contract_address_id
    WHERE
        storage_updates.contract_address_id = ?
    GROUP BY
        storage_updates.contract_address_id,
        storage_updates.storage_address_id
"""


class QueryError(Exception):
    """Storage engine failure while resolving a token."""

    def __init__(self, message: str, token: Optional[int] = None):
        self.token = token
        if token is not None:
            message = f"{message} (token {felt_to_padded_hex(token)})"
        super().__init__(message)


class StorageRecord(NamedTuple):
    """Latest write to one storage slot; addresses and value as hex strings."""
    contract_address: str
    storage_address: str
    storage_value: str
    block_number: int


class StorageHistory:
    """Read-only view over a storage-history database.

    Owns a single connection; queries are issued one at a time and the
    object must not be shared between threads or processes.
    """

    def __init__(self, db_path: Union[str, Path], batch_size: int = FETCH_BATCH_SIZE):
        self.db_path = Path(db_path)
        self.batch_size = batch_size
        if not self.db_path.is_file():
            raise QueryError(f"Storage database not found: {self.db_path}")
        try:
            self.conn = sqlite3.connect(f"{self.db_path.resolve().as_uri()}?mode=ro", uri=True)
        except sqlite3.Error as e:
            raise QueryError(f"Failed to open storage database {self.db_path}: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def check_schema(self):
        """Raise QueryError if any of the storage tables is missing."""
        try:
            rows = self.conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            ).fetchall()
        except sqlite3.Error as e:
            raise QueryError(f"Failed to read schema of {self.db_path}: {e}") from e
        present = {name for (name,) in rows}
        missing = [table for table in REQUIRED_TABLES if table not in present]
        if missing:
            raise QueryError(f"Storage database {self.db_path} is missing tables: {', '.join(missing)}")

    def contract_id(self, contract: int) -> Optional[int]:
        """Dictionary id of a contract address, or None if it never wrote storage."""
        try:
            row = self.conn.execute(CONTRACT_ID_QUERY, (felt_to_bytes32(contract),)).fetchone()
        except sqlite3.Error as e:
            raise QueryError(f"Failed to look up contract id: {e}", token=contract) from e
        return row[0] if row else None

    def latest_values(self, contract: int) -> Iterator[StorageRecord]:
        """Stream the latest value of every slot written under `contract`."""
        contract_id = self.contract_id(contract)
        if contract_id is None:
            return

        try:
            cursor = self.conn.execute(LATEST_VALUES_QUERY, (contract_id,))
            while True:
                rows = cursor.fetchmany(self.batch_size)
                if not rows:
                    break
                for contract_hex, storage_hex, value_hex, block_number in rows:
                    yield StorageRecord(contract_hex, storage_hex, value_hex, block_number)
        except sqlite3.Error as e:
            raise QueryError(f"Failed to query latest storage values: {e}", token=contract) from e
