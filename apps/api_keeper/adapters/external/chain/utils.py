from typing import Any

from hexbytes import HexBytes
from web3 import Web3


def to_json_safe(obj: Any) -> Any:
    """
    Recursively convert web3 / HexBytes-heavy structures (receipts, decoded
    logs) into plain JSON-serializable primitives.

    - HexBytes / bytes -> "0x..." str
    - Mapping (incl. AttributeDict) -> dict
    - list/tuple -> list
    - anything else not natively serializable -> str(obj)
    """
    if isinstance(obj, HexBytes):
        return Web3.to_hex(obj)
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + bytes(obj).hex()
    if isinstance(obj, (str, int, float, bool)) or obj is None:
        return obj
    if hasattr(obj, "items"):
        return {str(k): to_json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_json_safe(v) for v in obj]
    return str(obj)


def to_hex32(value: Any) -> str:
    """bytes32 -> lowercase 0x-prefixed hex."""
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(HexBytes(value)).lower()
