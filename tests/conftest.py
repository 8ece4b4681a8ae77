"""Pytest configuration and fixtures for the indexer tests."""

from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from eth_abi import encode
from web3 import Web3

from gamestake_indexer.abi import PLAY_GAME_ABI, TOKEN_STORE_ABI, event_topic
from gamestake_indexer.config import ENV_OVERRIDES, parse_config
from gamestake_indexer.records import EventKind, EventRecord
from gamestake_indexer.util import to_hex

PLAY_GAME = "0x" + "1" * 40
TOKEN_STORE = "0x" + "2" * 40

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
CAROL = "0x" + "c" * 40
DAVE = "0x" + "d" * 40

M1 = "0x" + "01" * 32
M2 = "0x" + "02" * 32
M3 = "0x" + "03" * 32

ABIS = {e["name"]: e for e in PLAY_GAME_ABI + TOKEN_STORE_ABI}


class EventFactory:
    """Builds decoded EventRecords with fresh transaction hashes."""

    def __init__(self) -> None:
        self._tx = 0

    def record(self, kind: EventKind, block: int, payload: Dict[str, Any], log_index: int = 0,
               tx: Optional[str] = None) -> EventRecord:
        if tx is None:
            self._tx += 1
            tx = "0x%064x" % self._tx
        return EventRecord(
            kind=kind,
            transaction_hash=tx,
            log_index=log_index,
            block_number=block,
            payload=payload,
            block_timestamp=1_700_000_000 + block * 12,
            contract_address=TOKEN_STORE if kind is EventKind.TOKEN_PURCHASE else PLAY_GAME,
        )

    def created(self, match_id, player1, player2, stake="50", block=1, **kw) -> EventRecord:
        payload = {"match_id": match_id, "player1": player1, "player2": player2, "stake": Decimal(stake)}
        return self.record(EventKind.MATCH_CREATED, block, payload, **kw)

    def staked(self, match_id, player, amount="50", block=2, **kw) -> EventRecord:
        payload = {"match_id": match_id, "player": player, "amount": Decimal(amount)}
        return self.record(EventKind.STAKED, block, payload, **kw)

    def settled(self, match_id, winner, payout="100", block=3, **kw) -> EventRecord:
        payload = {"match_id": match_id, "winner": winner, "total_payout": Decimal(payout)}
        return self.record(EventKind.SETTLED, block, payload, **kw)

    def refunded(self, match_id, player1, player2, stake="50", block=3, **kw) -> EventRecord:
        payload = {"match_id": match_id, "player1": player1, "player2": player2, "stake": Decimal(stake)}
        return self.record(EventKind.REFUNDED, block, payload, **kw)

    def purchase(self, buyer, usdt="100", gt="100", block=1, **kw) -> EventRecord:
        payload = {"buyer": buyer, "usdt_amount": Decimal(usdt), "gt_out": Decimal(gt)}
        return self.record(EventKind.TOKEN_PURCHASE, block, payload, **kw)


def build_log(name: str, args: Dict[str, Any], block: int, log_index: int = 0,
              tx_hash: Optional[str] = None, address: Optional[str] = None) -> Dict[str, Any]:
    """ABI-encode a contract event the way a node returns it over JSON-RPC."""
    event_abi = ABIS[name]
    topics = [event_topic(event_abi)]
    data_types: List[str] = []
    data_values: List[Any] = []
    for item in event_abi["inputs"]:
        value = args[item["name"]]
        if item["type"] == "address":
            value = Web3.to_checksum_address(value)
        elif item["type"] == "bytes32" and isinstance(value, str):
            value = bytes.fromhex(value[2:])
        if item["indexed"]:
            topics.append(to_hex(encode([item["type"]], [value])))
        else:
            data_types.append(item["type"])
            data_values.append(value)
    if address is None:
        address = TOKEN_STORE if name == "Purchase" else PLAY_GAME
    return {
        "address": address,
        "topics": topics,
        "data": to_hex(encode(data_types, data_values)),
        "blockNumber": hex(block),
        "blockHash": "0x" + ("%064x" % (block + 0xB10C)),
        "transactionHash": tx_hash or "0x" + ("%062x" % block) + ("%02x" % log_index),
        "transactionIndex": "0x0",
        "logIndex": hex(log_index),
        "removed": False,
    }


class FakeEth:
    def __init__(self, logs: List[Dict[str, Any]], block_number: int, max_range: Optional[int] = None):
        self.logs = logs
        self.block_number = block_number
        self.max_range = max_range
        self.get_logs_calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None
        self.failures: List[Exception] = []

    def get_logs(self, log_filter: Dict[str, Any]) -> List[Dict[str, Any]]:
        start, end = log_filter["fromBlock"], log_filter["toBlock"]
        self.get_logs_calls.append((start, end))
        if self.failures:
            raise self.failures.pop(0)
        if self.fail_with is not None:
            raise self.fail_with
        if self.max_range is not None and end - start + 1 > self.max_range:
            raise ValueError({"code": -32005, "message": "query returned more than 10000 results"})
        # reversed so the source has to restore chain order itself
        return [entry for entry in reversed(self.logs) if start <= int(entry["blockNumber"], 16) <= end]

    def get_block(self, block_number: int) -> Dict[str, Any]:
        return {"number": block_number, "timestamp": 1_700_000_000 + block_number * 12}


class FakeWeb3:
    def __init__(self, logs=None, block_number=0, max_range=None):
        self.eth = FakeEth(list(logs or []), block_number, max_range)
        self.codec = Web3().codec


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the developer's shell settings out of the config under test."""
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()


@pytest.fixture
def config_values() -> Dict[str, Any]:
    return {
        "rpc_http": "http://localhost:8545",
        "play_game_address": PLAY_GAME,
        "token_store_address": TOKEN_STORE,
        "batch_size": 100,
        "poll_interval": 0.01,
        "reconnect_delay": 0.01,
        "max_reconnect_delay": 0.05,
        "max_range_retries": 2,
        "predecessor_wait_blocks": 10,
    }


@pytest.fixture
def config(config_values):
    return parse_config(config_values)
