from __future__ import annotations

from typing import Any, Optional, Union

from eth_utils import encode_hex, is_address, to_bytes, to_checksum_address, to_int


def to_quantity(value: int) -> str:
    if value < 0:
        raise ValueError(f"Quantity must be non-negative: {value}")
    return hex(value)


def from_quantity(value: Any) -> int:
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Not a hex quantity: {value!r}")
    return to_int(hexstr=value)


def optional_quantity(value: Any) -> Optional[int]:
    return None if value is None else from_quantity(value)


def to_data(value: Union[bytes, str]) -> str:
    if isinstance(value, str):
        return "0x" + value.removeprefix("0x")
    return encode_hex(value)


def from_data(value: Union[bytes, str, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return to_bytes(hexstr=value)


def normalize_address(address: str) -> str:
    """Return the EIP-55 checksummed form of ``address``."""
    if not is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return to_checksum_address(address)
