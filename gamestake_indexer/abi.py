"""Event ABIs for the PlayGame and TokenStore contracts and log decoding."""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from web3 import Web3
from web3._utils.events import get_event_data

from .errors import DecodeError
from .records import EventKind, EventRecord
from .util import ZERO_ADDRESS, normalize_address, raw_to_decimal, to_hex


def _event(name: str, inputs: List[tuple]) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": arg, "type": typ, "indexed": indexed} for arg, typ, indexed in inputs
        ],
    }


PLAY_GAME_ABI = [
    _event(
        "MatchCreated",
        [
            ("matchId", "bytes32", True),
            ("player1", "address", True),
            ("player2", "address", True),
            ("stake", "uint256", False),
        ],
    ),
    _event(
        "Staked",
        [("matchId", "bytes32", True), ("player", "address", True), ("amount", "uint256", False)],
    ),
    _event(
        "Settled",
        [
            ("matchId", "bytes32", True),
            ("winner", "address", True),
            ("totalPayout", "uint256", False),
        ],
    ),
    _event(
        "Refunded",
        [
            ("matchId", "bytes32", True),
            ("player1", "address", True),
            ("player2", "address", True),
            ("stake", "uint256", False),
        ],
    ),
]

TOKEN_STORE_ABI = [
    _event(
        "Purchase",
        [("buyer", "address", True), ("usdtAmount", "uint256", False), ("gtOut", "uint256", False)],
    ),
]

EVENT_KINDS = {
    "MatchCreated": EventKind.MATCH_CREATED,
    "Staked": EventKind.STAKED,
    "Settled": EventKind.SETTLED,
    "Refunded": EventKind.REFUNDED,
    "Purchase": EventKind.TOKEN_PURCHASE,
}


def event_signature(event_abi: Dict[str, Any]) -> str:
    types = ",".join(item["type"] for item in event_abi["inputs"])
    return f"{event_abi['name']}({types})"


def event_topic(event_abi: Dict[str, Any]) -> str:
    return to_hex(Web3.keccak(text=event_signature(event_abi)))


class LogDecoder:
    """Maps raw logs from the two watched contracts onto EventRecords."""

    def __init__(
        self,
        codec: Any,
        play_game_address: str,
        token_store_address: str,
        gt_decimals: int = 18,
        usdt_decimals: int = 6,
    ):
        self.codec = codec
        self.gt_decimals = gt_decimals
        self.usdt_decimals = usdt_decimals
        self.topic_to_abi: Dict[str, Dict[str, Dict[str, Any]]] = {
            normalize_address(play_game_address): {event_topic(e): e for e in PLAY_GAME_ABI},
            normalize_address(token_store_address): {event_topic(e): e for e in TOKEN_STORE_ABI},
        }

    @property
    def addresses(self) -> List[str]:
        return [Web3.to_checksum_address(a) for a in sorted(self.topic_to_abi)]

    @property
    def topics(self) -> List[str]:
        return sorted({t for topic_map in self.topic_to_abi.values() for t in topic_map})

    def decode(self, log_entry: Dict[str, Any], block_timestamp: Optional[int] = None) -> EventRecord:
        """Decode a normalized log. Raises DecodeError for anything unusable."""
        try:
            address = normalize_address(log_entry.get("address"))
        except ValueError as exc:
            raise DecodeError(f"bad log address: {exc}") from exc
        topic_map = self.topic_to_abi.get(address)
        if topic_map is None:
            raise DecodeError(f"log from unwatched contract {address}")
        topics = log_entry.get("topics") or []
        if not topics:
            raise DecodeError(f"log without topics from {address}")
        event_abi = topic_map.get(to_hex(topics[0]))
        if event_abi is None:
            raise DecodeError(f"unknown event topic {to_hex(topics[0])} from {address}")

        tx_hash = log_entry.get("transactionHash")
        log_index = log_entry.get("logIndex")
        block_number = log_entry.get("blockNumber")
        if tx_hash is None or log_index is None or block_number is None:
            raise DecodeError("log is missing transactionHash, logIndex or blockNumber (pending log?)")

        try:
            event_data = get_event_data(self.codec, event_abi, log_entry)
            payload = self._payload(event_abi["name"], dict(event_data["args"]))
        except DecodeError:
            raise
        except Exception as exc:
            raise DecodeError(f"failed decoding {event_abi['name']} from {address}: {exc}") from exc

        return EventRecord(
            kind=EVENT_KINDS[event_abi["name"]],
            transaction_hash=to_hex(tx_hash),
            log_index=int(log_index),
            block_number=int(block_number),
            payload=payload,
            block_timestamp=block_timestamp,
            contract_address=address,
        )

    def _payload(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        def gt(value: Any) -> Decimal:
            return raw_to_decimal(int(value), self.gt_decimals)

        if name == "Purchase":
            return {
                "buyer": normalize_address(args["buyer"]),
                "usdt_amount": raw_to_decimal(int(args["usdtAmount"]), self.usdt_decimals),
                "gt_out": gt(args["gtOut"]),
            }
        match_id = to_hex(args["matchId"])
        if name in ("MatchCreated", "Refunded"):
            player2 = normalize_address(args["player2"])
            return {
                "match_id": match_id,
                "player1": normalize_address(args["player1"]),
                "player2": None if player2 == ZERO_ADDRESS else player2,
                "stake": gt(args["stake"]),
            }
        if name == "Staked":
            return {
                "match_id": match_id,
                "player": normalize_address(args["player"]),
                "amount": gt(args["amount"]),
            }
        if name == "Settled":
            return {
                "match_id": match_id,
                "winner": normalize_address(args["winner"]),
                "total_payout": gt(args["totalPayout"]),
            }
        raise DecodeError(f"no payload mapping for event {name}")
