"""
Address helpers.

Addresses are ``0x``-prefixed 20-byte hex strings. They are compared after
lower-casing, so two spellings of the same address are the same identity.
"""

from __future__ import annotations

import hashlib
import itertools
import time

ZERO_ADDRESS = "0x" + "00" * 20
ADDRESS_BYTES = 20

_address_nonce = itertools.count()


def is_address(value: object) -> bool:
    if not isinstance(value, str) or len(value) != 42 or not value.startswith(("0x", "0X")):
        return False
    try:
        bytes.fromhex(value[2:])
    except ValueError:
        return False
    return True


def normalize_address(value: str) -> str:
    """Return the canonical lower-case form of an address.

    Raises:
        ValueError: If ``value`` is not a 20-byte hex address
    """
    if not is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    return "0x" + value[2:].lower()


def address_to_bytes(value: str) -> bytes:
    return bytes.fromhex(normalize_address(value)[2:])


def address_from_bytes(raw: bytes) -> str:
    if len(raw) != ADDRESS_BYTES:
        raise ValueError(f"Address must be {ADDRESS_BYTES} bytes, got {len(raw)}")
    return "0x" + raw.hex()


def generate_address(label: str) -> str:
    """Derive a fresh address for a newly deployed contract."""
    addr_hash = hashlib.sha3_256(
        f"{label}:{time.time_ns()}:{next(_address_nonce)}".encode()
    ).digest()
    return f"0x{addr_hash[-20:].hex()}"


def short(address: str) -> str:
    """Truncated form for log fields."""
    return address[:10] if address else "none"
