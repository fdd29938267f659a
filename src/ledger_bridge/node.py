"""
EVM node adapter backed by web3's async JSON-RPC provider.
"""

import logging
from typing import Optional, Dict, Any, Mapping

from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from .interfaces import ILedgerNode, TxHash, BlockIdentifier
from .types import LedgerUnavailableError

logger = logging.getLogger(__name__)


def _hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value


class Web3Node(ILedgerNode):
    """Adapter for EVM-compatible nodes"""

    def __init__(self, rpc_url: str, request_timeout: float = 30.0,
                 poll_latency: float = 2.0):
        self.rpc_url = rpc_url
        self.poll_latency = poll_latency
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            rpc_url, request_kwargs={"timeout": request_timeout}
        ))

    async def is_connected(self) -> bool:
        try:
            return await self.w3.is_connected()
        except Exception as e:
            logger.warning(f"Connectivity check against {self.rpc_url} failed: {e}")
            return False

    async def chain_id(self) -> int:
        return await self.w3.eth.chain_id

    async def gas_price(self) -> int:
        return await self.w3.eth.gas_price

    async def max_priority_fee(self) -> Optional[int]:
        try:
            return await self.w3.eth.max_priority_fee
        except Exception as e:
            # Nodes without a two-part fee market reject eth_maxPriorityFeePerGas
            logger.debug(f"max_priority_fee unavailable: {e}")
            return None

    async def get_block(self, block_identifier: BlockIdentifier) -> Optional[Mapping[str, Any]]:
        return await self.w3.eth.get_block(block_identifier)

    async def block_number(self) -> int:
        return await self.w3.eth.block_number

    async def estimate_gas(self, transaction: Dict[str, Any]) -> int:
        return await self.w3.eth.estimate_gas(transaction)

    async def get_transaction_count(self, address: str) -> int:
        return await self.w3.eth.get_transaction_count(address, "pending")

    async def send_raw_transaction(self, raw_transaction: bytes) -> TxHash:
        tx_hash = await self.w3.eth.send_raw_transaction(raw_transaction)
        return _hex(tx_hash)

    async def get_transaction(self, tx_hash: TxHash) -> Optional[Mapping[str, Any]]:
        try:
            return await self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None

    async def get_transaction_receipt(self, tx_hash: TxHash) -> Optional[Mapping[str, Any]]:
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def wait_for_receipt(self, tx_hash: TxHash, timeout: float) -> Mapping[str, Any]:
        return await self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=timeout, poll_latency=self.poll_latency
        )

    async def disconnect(self) -> None:
        provider = self.w3.provider
        if hasattr(provider, "disconnect"):
            try:
                await provider.disconnect()
            except Exception as e:
                logger.error(f"Error disconnecting from {self.rpc_url}: {e}")
        logger.info(f"Disconnected from {self.rpc_url}")


def create_web3_node(rpc_url: str) -> ILedgerNode:
    """Default node factory"""
    if not rpc_url:
        raise LedgerUnavailableError("No RPC endpoint configured", error_code="NO_ENDPOINT")
    return Web3Node(rpc_url)
