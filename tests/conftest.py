"""
Shared fixtures: an in-process ledger node, a controllable clock and an
in-memory mirror store.
"""

import asyncio
from typing import Dict, Any, Optional, List, Mapping

import pytest
from eth_abi import encode
from eth_utils import event_abi_to_log_topic, keccak, to_wei
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ledger_bridge.config import LedgerSettings
from ledger_bridge.connection import LedgerConnection
from ledger_bridge.contracts import load_abi
from ledger_bridge.db import Base
from ledger_bridge.interfaces import ILedgerNode

# Well-known throwaway key, never funded anywhere
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

SCRIPT_NFT_ADDRESS = "0x" + "11" * 20
PROJECT_REGISTRY_ADDRESS = "0x" + "22" * 20
ESCROW_MANAGER_ADDRESS = "0x" + "33" * 20

WRITER = "0x" + "aa" * 20
PRODUCER = "0x" + "bb" * 20

START_TIME = 1_700_000_000.0


def gwei(value) -> int:
    return to_wei(value, "gwei")


def tx_hash_for(n: int) -> str:
    return "0x" + f"{n:064x}"


def make_settings(**overrides) -> LedgerSettings:
    values = dict(
        environment="test",
        blockchain_enabled=True,
        LISK_RPC_URL="http://node.test",
        LISK_PRIVATE_KEY=TEST_PRIVATE_KEY,
        script_nft_address=SCRIPT_NFT_ADDRESS,
        project_registry_address=PROJECT_REGISTRY_ADDRESS,
        escrow_manager_address=ESCROW_MANAGER_ADDRESS,
    )
    values.update(overrides)
    return LedgerSettings(_env_file=None, **values)


def event_log(contract_name: str, event_name: str, address: str, **values) -> Dict[str, Any]:
    """Receipt log entry as a node would return it"""
    abi = next(
        item for item in load_abi(contract_name)
        if item.get("type") == "event" and item["name"] == event_name
    )
    topics = [event_abi_to_log_topic(abi)]
    for inp in abi["inputs"]:
        if inp["indexed"]:
            topics.append(encode([inp["type"]], [values[inp["name"]]]))
    plain = [inp for inp in abi["inputs"] if not inp["indexed"]]
    data = encode([inp["type"] for inp in plain], [values[inp["name"]] for inp in plain])
    return {"address": address, "topics": topics, "data": data}


class FakeClock:
    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Sleep replacement that records delays and advances a fake clock"""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, delay: float):
        self.calls.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)


class FakeNode(ILedgerNode):
    """
    Scriptable in-process node.

    Fee data, estimator failures, receipts and outages are plain attributes
    so tests can set up each scenario directly.
    """

    def __init__(self, chain_id: int = 4202, clock: Optional[FakeClock] = None):
        self.chain = chain_id
        self.clock = clock
        self.connected = True
        self.unreachable_until: Optional[float] = None

        self.gas_price_wei = gwei(10)
        self.base_fee: Optional[int] = gwei(5)
        self.priority_fee: Optional[int] = gwei(2)
        self.fee_calls = 0

        self.estimated_gas = 100000
        self.estimate_failures = 0
        self.estimate_calls = 0

        self.height = 100
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}

        self.sent: List[bytes] = []
        self.nonce = 0
        self.receipt_status = 1
        self.receipt_logs: List[Dict[str, Any]] = []
        self.receipt_gas_used = 90000
        self.disconnects = 0

    @property
    def down(self) -> bool:
        if self.unreachable_until is None:
            return False
        return self.clock() < self.unreachable_until

    def _check(self):
        if self.down:
            raise ConnectionError("node unreachable")

    # Scenario helpers

    def add_pending(self, tx_hash: str, sender: str = WRITER, to: str = SCRIPT_NFT_ADDRESS):
        self.transactions[tx_hash] = {"hash": tx_hash, "from": sender, "to": to}

    def include(self, tx_hash: str, block_number: Optional[int] = None, status: int = 1,
                logs: Optional[List[Dict[str, Any]]] = None):
        if tx_hash not in self.transactions:
            self.add_pending(tx_hash)
        block_number = self.height if block_number is None else block_number
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "blockNumber": block_number,
            "status": status,
            "gasUsed": self.receipt_gas_used,
            "effectiveGasPrice": gwei(7),
            "logs": logs or [],
        }

    def mine(self, blocks: int = 1):
        self.height += blocks

    # ILedgerNode

    async def is_connected(self) -> bool:
        return self.connected and not self.down

    async def chain_id(self) -> int:
        self._check()
        return self.chain

    async def gas_price(self) -> int:
        self._check()
        self.fee_calls += 1
        return self.gas_price_wei

    async def max_priority_fee(self) -> Optional[int]:
        self._check()
        return self.priority_fee

    async def get_block(self, block_identifier) -> Optional[Mapping[str, Any]]:
        self._check()
        number = self.height if block_identifier == "latest" else block_identifier
        block = {"number": number, "timestamp": int(START_TIME) + number}
        if self.base_fee is not None:
            block["baseFeePerGas"] = self.base_fee
        return block

    async def block_number(self) -> int:
        self._check()
        return self.height

    async def estimate_gas(self, transaction: Dict[str, Any]) -> int:
        self._check()
        self.estimate_calls += 1
        if self.estimate_calls <= self.estimate_failures:
            raise ValueError("execution reverted: estimation unavailable")
        return self.estimated_gas

    async def get_transaction_count(self, address: str) -> int:
        self._check()
        return self.nonce

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        self._check()
        self.sent.append(raw_transaction)
        self.nonce += 1
        tx_hash = "0x" + keccak(raw_transaction).hex()
        self.add_pending(tx_hash)
        return tx_hash

    async def get_transaction(self, tx_hash: str) -> Optional[Mapping[str, Any]]:
        self._check()
        return self.transactions.get(tx_hash)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Mapping[str, Any]]:
        self._check()
        return self.receipts.get(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Mapping[str, Any]:
        self._check()
        if tx_hash not in self.receipts:
            self.include(tx_hash, status=self.receipt_status, logs=self.receipt_logs)
        return self.receipts[tx_hash]

    async def disconnect(self) -> None:
        self.disconnects += 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def node(clock):
    return FakeNode(clock=clock)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def connection(settings, node, clock):
    return LedgerConnection(settings, node_factory=lambda url: node, clock=clock)


@pytest.fixture
def session_factory():
    """Fresh in-memory mirror store per test"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
