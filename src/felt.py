import re
from typing import Optional

from eth_utils import int_to_big_endian, remove_0x_prefix

# Starknet field prime: 2**251 + 17 * 2**192 + 1
FIELD_PRIME = 0x800000000000011000000000000000000000000000000000000000000000001
FELT_ZERO = 0

# A felt is carried in 32 bytes / 64 hex digits
FELT_BYTES = 32
FELT_HEX_DIGITS = FELT_BYTES * 2

_HEX_DIGITS = re.compile(r"^[0-9a-fA-F]+$")


class ParseError(ValueError):
    """Raised when a value is not a valid hex-encoded field element."""


def parse_felt(value) -> int:
    """Parse a hex string (with or without 0x) into a field element.

    Values up to 256 bits are accepted and reduced modulo FIELD_PRIME,
    anything wider or not hex raises ParseError.
    """
    if isinstance(value, bool):
        raise ParseError(f"Not a field element: {value!r}")
    if isinstance(value, int):
        if value < 0 or value.bit_length() > FELT_BYTES * 8:
            raise ParseError(f"Field element out of range: {value}")
        return value % FIELD_PRIME
    if not isinstance(value, str):
        raise ParseError(f"Not a field element: {value!r}")

    digits = remove_0x_prefix(value.strip())
    if not _HEX_DIGITS.match(digits):
        raise ParseError(f"Invalid hex string: {value!r}")
    digits = digits.lstrip("0") or "0"
    if len(digits) > FELT_HEX_DIGITS:
        raise ParseError(f"Hex string wider than 256 bits: {value!r}")
    return int(digits, 16) % FIELD_PRIME


def parse_felt_or_zero(value: Optional[str]) -> int:
    """Parse a stored value, falling back to zero on malformed input."""
    if value is None:
        return FELT_ZERO
    try:
        return parse_felt(value)
    except ParseError:
        return FELT_ZERO


def felt_to_hex(felt: int) -> str:
    """Shortest 0x-prefixed lowercase hex."""
    return hex(felt)


def felt_to_padded_hex(felt: int) -> str:
    """0x-prefixed hex zero-padded to 64 digits."""
    return "0x" + format(felt, f"0{FELT_HEX_DIGITS}x")


def felt_to_bytes32(felt: int) -> bytes:
    """Big-endian 32-byte encoding, as stored in the address dictionaries."""
    return int_to_big_endian(felt).rjust(FELT_BYTES, b"\x00")

