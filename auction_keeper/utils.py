#!/usr/bin/env python3
"""
Normalization helpers applied at every boundary (events, store, registry, contracts).

Addresses and hashes are kept lower-case 0x-prefixed hex internally and are only
checksummed when handed to web3.
"""

import time
from typing import Any, Optional, Union

from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
UNKNOWN_TX_HASH = "unknown"


def _to_hex(value: Any) -> str:
    """Bytes-like (including HexBytes) or str to a 0x-prefixed hex string"""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    hx = getattr(value, "hex", None)
    if callable(hx) and not isinstance(value, str):
        s = hx()
        if isinstance(s, str):
            return s if s.startswith("0x") else f"0x{s}"
    s = str(value).strip()
    return s if s.startswith("0x") else f"0x{s}"


def normalize_address(address_raw: Any) -> str:
    """Normalize an address to lower-case hex, handling YAML int conversion"""
    if address_raw is None:
        return ZERO_ADDRESS
    if isinstance(address_raw, int):
        if address_raw <= 0:
            return ZERO_ADDRESS
        return f"0x{address_raw:040x}"
    return _to_hex(address_raw).lower()


def checksum_address(address_raw: Any) -> str:
    return Web3.to_checksum_address(normalize_address(address_raw))


def same_address(a: Any, b: Any) -> bool:
    return normalize_address(a) == normalize_address(b)


def is_zero_address(address_raw: Any) -> bool:
    return normalize_address(address_raw) == ZERO_ADDRESS


def refund_target(bidder: Any, chain: str) -> str:
    """Progress key for one refundBid: a bidder's escrow on one chain"""
    return f"{normalize_address(bidder)}@{chain}"


def normalize_refund_target(target: Any) -> str:
    bidder, sep, chain = str(target).partition("@")
    return refund_target(bidder, chain) if sep else normalize_address(bidder)


def normalize_tx_hash(tx_hash: Any) -> Optional[str]:
    """Normalize a transaction hash to lower-case 0x hex; None for missing values"""
    if tx_hash is None:
        return None
    if isinstance(tx_hash, str):
        tx_hash = tx_hash.strip()
        if not tx_hash or tx_hash == UNKNOWN_TX_HASH:
            return None
    return _to_hex(tx_hash).lower()


def normalize_intent_id(intent_id: Any) -> str:
    """Intent ids arrive as bytes32 from events and as hex strings from storage"""
    if isinstance(intent_id, int):
        return f"0x{intent_id:064x}"
    return _to_hex(intent_id).lower()


def intent_id_to_bytes(intent_id: Any) -> bytes:
    hex_str = normalize_intent_id(intent_id)[2:]
    return bytes.fromhex(hex_str.rjust(64, "0"))


def normalize_chain_id(identifier: Union[int, str, None]) -> Optional[int]:
    """Canonical numeric chain id, or None when the identifier is a name"""
    if identifier is None or isinstance(identifier, bool):
        return None
    if isinstance(identifier, int):
        return identifier
    s = str(identifier).strip()
    if s.isdigit():
        return int(s)
    if s.lower().startswith("0x"):
        try:
            return int(s, 16)
        except ValueError:
            return None
    return None


def short(value: Any) -> str:
    """Shorten hex ids for log lines"""
    s = str(value)
    if len(s) <= 12:
        return s
    return f"{s[:6]}..{s[-4:]}"


def now_ts() -> int:
    return int(time.time())
