"""
Core types and enums for ledger operations.
"""

from enum import Enum
from typing import Optional, Dict, Any
from decimal import Decimal
from dataclasses import dataclass, field, replace


class OperationKind(Enum):
    """Ledger-mutating operations submitted by the marketplace"""
    PROJECT_REGISTRATION = "project_registration"
    SCRIPT_NFT_MINT = "script_nft_mint"
    NFT_TRANSFER = "nft_transfer"
    ESCROW_FUNDING = "escrow_funding"
    PAYMENT_RELEASE = "payment_release"
    ESCROW_REFUND = "escrow_refund"


class TransactionState(Enum):
    """Observed transaction states"""
    UNKNOWN = "unknown"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    DROPPED = "dropped"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == 2


_STATE_RANK = {
    TransactionState.UNKNOWN: 0,
    TransactionState.PENDING: 1,
    TransactionState.CONFIRMED: 2,
    TransactionState.FAILED: 2,
    TransactionState.DROPPED: 2,
}


class GasStrategy(Enum):
    """Gas pricing strategies, ordered by urgency"""
    ECONOMICAL = "economical"  # Non-urgent, cheaper
    STANDARD = "standard"
    FAST = "fast"
    AGGRESSIVE = "aggressive"  # Fastest inclusion


class OptimizationLevel(Enum):
    """How tight the safety margin on top of a dry-run estimate is"""
    NONE = "none"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class TransactionMetadata:
    """Business descriptor attached to a transaction at submission time"""
    kind: OperationKind
    user_id: str
    project_id: Optional[str] = None
    submission_id: Optional[str] = None
    recipient_id: Optional[str] = None
    amount: Optional[Decimal] = None
    token_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "submission_id": self.submission_id,
            "recipient_id": self.recipient_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "token_id": self.token_id,
            "extra": dict(self.extra),
        }


@dataclass
class TransactionRecord:
    """Monitor's view of a single transaction"""
    tx_hash: str
    metadata: Optional[TransactionMetadata] = None
    state: TransactionState = TransactionState.UNKNOWN
    confirmations: int = 0
    block_number: Optional[int] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    total_cost_wei: Optional[int] = None
    timestamp: Optional[int] = None
    error: Optional[str] = None

    def copy(self) -> "TransactionRecord":
        return replace(self)

    def is_settled(self, threshold: int) -> bool:
        return self.state == TransactionState.CONFIRMED and self.confirmations >= threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "state": self.state.value,
            "confirmations": self.confirmations,
            "block_number": self.block_number,
            "from": self.from_address,
            "to": self.to_address,
            "gas_used": self.gas_used,
            "effective_gas_price": self.effective_gas_price,
            "total_cost_wei": str(self.total_cost_wei) if self.total_cost_wei is not None else None,
            "timestamp": self.timestamp,
            "error": self.error,
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }


@dataclass(frozen=True)
class FeeMarketSnapshot:
    """Point-in-time fee market data reported by the node"""
    captured_at: float
    gas_price: int
    base_fee: Optional[int] = None
    priority_fee: Optional[int] = None

    @property
    def supports_eip1559(self) -> bool:
        return self.base_fee is not None and self.priority_fee is not None


@dataclass
class GasEstimate:
    """Gas price and limit for a pending operation"""
    strategy: GasStrategy
    gas_limit: int
    gas_price: Optional[int] = None  # Legacy fee market
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    estimated_time: Optional[str] = None
    from_default: bool = False

    @property
    def unit_price(self) -> int:
        if self.max_fee_per_gas is not None:
            return self.max_fee_per_gas
        return self.gas_price or 0

    @property
    def max_cost_wei(self) -> int:
        return self.gas_limit * self.unit_price

    def tx_params(self) -> Dict[str, Any]:
        """Gas fields for a transaction dict"""
        params: Dict[str, Any] = {"gas": self.gas_limit}
        if self.max_fee_per_gas is not None:
            params["maxFeePerGas"] = self.max_fee_per_gas
            params["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas
            params["type"] = 2
        else:
            params["gasPrice"] = self.gas_price
        return params


@dataclass
class SubmitResult:
    """Outcome of a gateway operation"""
    success: bool
    kind: OperationKind
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    operation_id: Optional[str] = None
    token_id: Optional[str] = None
    gas_fee_wei: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "kind": self.kind.value}
        if self.success:
            result["tx_hash"] = self.tx_hash
        else:
            result["error"] = self.error
            if self.tx_hash:
                result["tx_hash"] = self.tx_hash
        if self.operation_id is not None:
            result["operation_id"] = self.operation_id
        if self.token_id is not None:
            result["token_id"] = self.token_id
        if self.gas_fee_wei is not None:
            result["gas_fee_wei"] = str(self.gas_fee_wei)
        result.update(self.extra)
        return result


class LedgerError(Exception):
    """Base exception for ledger operations"""
    def __init__(self, message: str, error_code: Optional[str] = None,
                 node_error: Optional[str] = None, tx_hash: Optional[str] = None):
        self.message = message
        self.error_code = error_code
        self.node_error = node_error
        self.tx_hash = tx_hash
        super().__init__(message)

    def describe(self) -> str:
        if self.node_error and self.node_error not in self.message:
            return f"{self.message}: {self.node_error}"
        return self.message


class LedgerConfigurationError(LedgerError):
    """Required ledger configuration is missing"""
    pass


class LedgerUnavailableError(LedgerError):
    """Node cannot be reached"""
    pass


class NetworkMismatchError(LedgerUnavailableError):
    """Node reports a different chain than expected"""
    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Connected to wrong network: expected chainId {expected}, found {actual}",
            error_code="NETWORK_MISMATCH"
        )


class ContractNotConfiguredError(LedgerConfigurationError):
    """Contract address is not configured"""
    pass


class SignerNotConfiguredError(LedgerConfigurationError):
    """No signing key available for mutating operations"""
    pass


class TransactionRevertedError(LedgerError):
    """Receipt reports failure"""
    pass


class EventNotFoundError(LedgerError):
    """Required event missing from receipt logs"""
    pass
