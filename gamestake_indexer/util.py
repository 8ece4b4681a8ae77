"""Small helpers shared by the indexer modules."""

import json
import sys
import time
from decimal import Decimal
from typing import Any, Dict

from hexbytes import HexBytes
from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def to_hex(value: Any) -> str:
    """Render bytes-like values as lowercase 0x-prefixed hex."""
    if isinstance(value, str):
        value = HexBytes(value)
    return "0x" + bytes(value).hex()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray)):
        return to_hex(obj)
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if hasattr(obj, "value") and hasattr(obj, "name"):
        return obj.value
    return str(obj)


def json_dumps(obj: Any, **kwargs: Any) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True, **kwargs)


def normalize_address(addr: Any) -> str:
    if isinstance(addr, (bytes, bytearray)):
        addr = to_hex(addr)
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr).__name__}")
    addr = addr.strip().lower()
    if not Web3.is_address(addr):
        raise ValueError(f"invalid address format: {addr}")
    return addr


def parse_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


def raw_to_decimal(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)


def normalize_log(log_entry: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce a JSON-RPC log (hex strings) into the shape web3 decoders expect."""
    out = dict(log_entry)
    for key in ("transactionHash", "blockHash"):
        if isinstance(out.get(key), str):
            out[key] = HexBytes(out[key])
    if isinstance(out.get("data"), str):
        out["data"] = HexBytes(out["data"])
    if isinstance(out.get("topics"), list):
        out["topics"] = [HexBytes(t) if isinstance(t, str) else t for t in out["topics"]]
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        if key in out and out[key] is not None:
            out[key] = parse_int(out[key])
    if "address" in out and isinstance(out["address"], str):
        out["address"] = Web3.to_checksum_address(out["address"])
    return out
