import pytest
from web3.exceptions import TimeExhausted

from ledger_bridge.node import Web3Node, create_web3_node
from ledger_bridge.types import LedgerUnavailableError

from conftest import tx_hash_for


class TestWeb3Node:
    """Test suite for the web3-backed node adapter"""

    @pytest.fixture
    def web3_node(self):
        return Web3Node("http://node.test", poll_latency=0.5)

    @pytest.mark.asyncio
    async def test_wait_for_receipt_delegates_to_web3(self, web3_node, monkeypatch):
        calls = []

        async def wait_for_transaction_receipt(tx_hash, timeout, poll_latency):
            calls.append((tx_hash, timeout, poll_latency))
            return {"transactionHash": tx_hash, "status": 1}

        monkeypatch.setattr(web3_node.w3.eth, "wait_for_transaction_receipt",
                            wait_for_transaction_receipt)

        receipt = await web3_node.wait_for_receipt(tx_hash_for(1), timeout=120)

        assert receipt["status"] == 1
        assert calls == [(tx_hash_for(1), 120, 0.5)]

    @pytest.mark.asyncio
    async def test_wait_for_receipt_timeout_propagates(self, web3_node, monkeypatch):
        async def wait_for_transaction_receipt(tx_hash, timeout, poll_latency):
            raise TimeExhausted(f"Transaction {tx_hash} is not in the chain after {timeout} seconds")

        monkeypatch.setattr(web3_node.w3.eth, "wait_for_transaction_receipt",
                            wait_for_transaction_receipt)

        with pytest.raises(TimeExhausted):
            await web3_node.wait_for_receipt(tx_hash_for(2), timeout=1)

    def test_factory_requires_endpoint(self):
        with pytest.raises(LedgerUnavailableError):
            create_web3_node("")
