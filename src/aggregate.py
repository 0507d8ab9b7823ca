from concurrent.futures import ProcessPoolExecutor
from typing import Dict, Iterable, List, Mapping, Optional

from felt import ParseError, parse_felt, parse_felt_or_zero
from helpers import DEFAULT_CHUNK_SIZE, chunked, map_chunks_unordered, worker_pool
from slots import AccountIndex
from storage_db import StorageRecord

# Slot -> account mapping installed in each worker process by the pool initializer
_WORKER_INDEX: Optional[Mapping[int, int]] = None


def _install_index(slots: Mapping[int, int]):
    global _WORKER_INDEX
    _WORKER_INDEX = slots


def resolve_record(record: StorageRecord, slots: Mapping[int, int]):
    """Return (account, balance) for a record, or None when its slot is not tracked."""
    try:
        slot = parse_felt(record.storage_address)
    except ParseError:
        return None
    account = slots.get(slot)
    if account is None:
        return None
    return account, parse_felt_or_zero(record.storage_value)


def _aggregate_into(records: Iterable[StorageRecord], slots: Mapping[int, int]) -> Dict[int, int]:
    balances: Dict[int, int] = {}
    for record in records:
        resolved = resolve_record(record, slots)
        if resolved is not None:
            account, balance = resolved
            balances[account] = balance
    return balances


def _aggregate_chunk(records: List[StorageRecord]) -> Dict[int, int]:
    return _aggregate_into(records, _WORKER_INDEX)


def merge_balance_maps(partials: Iterable[Dict[int, int]]) -> Dict[int, int]:
    """Union of partial maps; each account appears in at most one partial."""
    merged: Dict[int, int] = {}
    for partial in partials:
        merged.update(partial)
    return merged


def aggregate_records(records: Iterable[StorageRecord], index: AccountIndex) -> Dict[int, int]:
    """Join one token's storage records against the account index."""
    return _aggregate_into(records, index)


def aggregation_pool(index: AccountIndex, workers: int):
    """Context manager yielding a pool whose workers already hold the index.

    Open it once per run and pass it to every aggregate_records_parallel
    call; yields None when workers <= 1.
    """
    if workers <= 1:
        return worker_pool(1)
    return worker_pool(workers, initializer=_install_index, initargs=(index.as_dict(),))


def aggregate_records_parallel(
    records: Iterable[StorageRecord],
    index: AccountIndex,
    workers: int,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    executor: Optional[ProcessPoolExecutor] = None,
) -> Dict[int, int]:
    """Partition records into chunks, join them in a process pool and merge.

    `executor` must come from aggregation_pool for the same index. Without
    one, a pool is opened for this call alone. Records are consumed lazily.
    Produces the same map as aggregate_records for any record ordering.
    """
    if executor is None:
        if workers <= 1:
            return aggregate_records(records, index)
        with aggregation_pool(index, workers) as pool:
            return aggregate_records_parallel(records, index, workers, chunk_size, pool)

    partials = map_chunks_unordered(
        _aggregate_chunk,
        chunked(records, chunk_size),
        executor,
        max_pending=2 * max(workers, 1),
    )
    return merge_balance_maps(partials)
