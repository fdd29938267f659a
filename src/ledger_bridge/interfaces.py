"""
Interfaces (protocols) for ledger access.
Using Python's Protocol for structural subtyping.
"""

from typing import Protocol, Dict, Any, Optional, Union, Mapping
from abc import abstractmethod


TxHash = str
BlockIdentifier = Union[int, str]


class ILedgerNode(Protocol):
    """JSON-RPC surface of a ledger node used by the bridge"""

    @abstractmethod
    async def is_connected(self) -> bool:
        """Check the node answers requests"""
        ...

    @abstractmethod
    async def chain_id(self) -> int:
        """Network identity"""
        ...

    @abstractmethod
    async def gas_price(self) -> int:
        """Legacy flat gas price"""
        ...

    @abstractmethod
    async def max_priority_fee(self) -> Optional[int]:
        """Suggested priority fee, None if the node has no fee market"""
        ...

    @abstractmethod
    async def get_block(self, block_identifier: BlockIdentifier) -> Optional[Mapping[str, Any]]:
        """Block by number or tag"""
        ...

    @abstractmethod
    async def block_number(self) -> int:
        """Current block height"""
        ...

    @abstractmethod
    async def estimate_gas(self, transaction: Dict[str, Any]) -> int:
        """Dry-run gas estimation"""
        ...

    @abstractmethod
    async def get_transaction_count(self, address: str) -> int:
        """Next nonce for an address, including pending transactions"""
        ...

    @abstractmethod
    async def send_raw_transaction(self, raw_transaction: bytes) -> TxHash:
        """Broadcast a signed transaction"""
        ...

    @abstractmethod
    async def get_transaction(self, tx_hash: TxHash) -> Optional[Mapping[str, Any]]:
        """Transaction by hash, None when unknown to the node"""
        ...

    @abstractmethod
    async def get_transaction_receipt(self, tx_hash: TxHash) -> Optional[Mapping[str, Any]]:
        """Receipt by hash, None until included"""
        ...

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: TxHash, timeout: float) -> Mapping[str, Any]:
        """Wait until the transaction is included"""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the provider"""
        ...
