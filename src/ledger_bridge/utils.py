"""
Utility functions for ledger operations.
"""

import hashlib
import json
import re
from typing import Union, Any
from decimal import Decimal

from eth_utils import to_checksum_address, is_address, to_wei, from_wei
from hexbytes import HexBytes

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")


def normalize_address(address: str) -> str:
    """Checksum an address, rejecting malformed input"""
    if not is_address(address):
        raise ValueError(f"Invalid address: {address}")
    return to_checksum_address(address)


def normalize_tx_hash(tx_hash: Union[str, bytes]) -> str:
    """Lower-case 0x-prefixed hex form of a transaction hash"""
    if isinstance(tx_hash, (bytes, bytearray)):
        tx_hash = "0x" + bytes(tx_hash).hex()
    tx_hash = tx_hash.lower()
    if not tx_hash.startswith("0x"):
        tx_hash = "0x" + tx_hash
    if not TX_HASH_PATTERN.match(tx_hash):
        raise ValueError(f"Invalid transaction hash: {tx_hash}")
    return tx_hash


def to_bytes(value: Union[str, bytes]) -> bytes:
    return bytes(HexBytes(value))


def format_wei(wei_value: Union[int, str], unit: str = "ether") -> Decimal:
    """Convert wei to larger unit"""
    return Decimal(str(from_wei(int(wei_value), unit)))


def to_wei_amount(amount: Union[Decimal, float, str], unit: str = "ether") -> int:
    """Convert amount to wei"""
    if isinstance(amount, (Decimal, float)):
        amount = str(amount)
    return to_wei(Decimal(amount), unit)


def apply_percentage(value: int, percent: int) -> int:
    """Integer percentage of a wei amount, rounded down"""
    return value * percent // 100


def mock_tx_hash(*parts: Any) -> str:
    """Deterministic transaction id for the disabled ledger path"""
    payload = json.dumps([str(p) for p in parts], sort_keys=True)
    return "0x" + hashlib.sha256(payload.encode()).hexdigest()
