from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from starknet_py.hash.selector import get_selector_from_name
from starknet_py.hash.utils import pedersen_hash

from felt import felt_to_padded_hex
from helpers import default_workers, fan_out, split_evenly

HashFn = Callable[[int, int], int]

# Storage variable holding ERC20 balances in Cairo token contracts
BALANCES_VARIABLE = "ERC20_balances"
BALANCES_SELECTOR = get_selector_from_name(BALANCES_VARIABLE)


class SlotCollisionError(ValueError):
    """Two distinct accounts derived the same storage slot."""


def selector_for(variable_name: str) -> int:
    """starknet_keccak of a storage variable name."""
    return get_selector_from_name(variable_name)


def derive_slot(selector: int, account: int, hash_fn: HashFn = pedersen_hash) -> int:
    """Storage slot of `account` within the variable identified by `selector`."""
    return hash_fn(selector, account)


def _derive_chunk(args: Tuple[int, List[int], HashFn]) -> List[Tuple[int, int]]:
    selector, accounts, hash_fn = args
    return [(hash_fn(selector, account), account) for account in accounts]


# =============================================================================
# ACCOUNT INDEX
# =============================================================================

class AccountIndex:
    """Sealed slot -> account mapping.

    Never mutated after construction, so worker processes and threads can
    read it without synchronisation.
    """

    def __init__(self, slots: Mapping[int, int], selector: int):
        self._slots = MappingProxyType(dict(slots))
        self.selector = selector

    def resolve(self, slot: int) -> Optional[int]:
        return self._slots.get(slot)

    def get(self, slot: int, default: Optional[int] = None) -> Optional[int]:
        return self._slots.get(slot, default)

    def as_dict(self) -> Dict[int, int]:
        return dict(self._slots)

    def __contains__(self, slot) -> bool:
        return slot in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def __repr__(self) -> str:
        return f"AccountIndex(selector={felt_to_padded_hex(self.selector)}, accounts={len(self)})"


def _merge_pairs(pairs: Iterable[Tuple[int, int]]) -> Dict[int, int]:
    slots: Dict[int, int] = {}
    for slot, account in pairs:
        existing = slots.setdefault(slot, account)
        if existing != account:
            raise SlotCollisionError(
                f"Accounts {felt_to_padded_hex(existing)} and {felt_to_padded_hex(account)} "
                f"both map to slot {felt_to_padded_hex(slot)}"
            )
    return slots


def build_account_index(
    accounts: Iterable[int],
    selector: int = BALANCES_SELECTOR,
    workers: Optional[int] = None,
    hash_fn: HashFn = pedersen_hash,
) -> AccountIndex:
    """Derive every account's slot and seal the result into an AccountIndex.

    Accounts are de-duplicated first; derivation is split across `workers`
    processes. `hash_fn` must be picklable when workers > 1.
    """
    unique_accounts = sorted(set(accounts))
    if workers is None:
        workers = default_workers()

    if workers <= 1 or len(unique_accounts) < 2:
        pairs = _derive_chunk((selector, unique_accounts, hash_fn))
        return AccountIndex(_merge_pairs(pairs), selector)

    parts = split_evenly(unique_accounts, workers)
    tasks = [(selector, list(part), hash_fn) for part in parts]
    results = fan_out(_derive_chunk, tasks, workers=min(workers, len(tasks)))
    pairs = (pair for partial in results for pair in partial)
    return AccountIndex(_merge_pairs(pairs), selector)
