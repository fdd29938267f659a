"""
Ledger bridge for the script marketplace.

Gas estimation, ledger submission, transaction monitoring and reconciliation
of ledger outcomes into the marketplace's own database.
"""

__version__ = "1.0.0"

from .types import (
    OperationKind,
    TransactionState,
    GasStrategy,
    OptimizationLevel,
    TransactionMetadata,
    TransactionRecord,
    FeeMarketSnapshot,
    GasEstimate,
    SubmitResult,
    LedgerError,
    LedgerConfigurationError,
    LedgerUnavailableError,
    NetworkMismatchError,
    ContractNotConfiguredError,
    SignerNotConfiguredError,
    TransactionRevertedError,
    EventNotFoundError,
)

from .interfaces import ILedgerNode

from .config import LedgerSettings, get_settings, configure_logging

from .contracts import (
    ContractInterface,
    EventNotFound,
    ScriptNFTMinted,
    NFTTransferred,
    ProjectCreated,
    ProjectFunded,
    PaymentReleased,
    ProducerRefunded,
)

from .connection import LedgerConnection
from .gas_optimizer import GasOptimizer, DryRunResult, default_gas_limit
from .gateway import LedgerGateway
from .transaction_monitor import TransactionMonitor
from .reconciliation import ReconciliationService

__all__ = [
    # Types
    "OperationKind",
    "TransactionState",
    "GasStrategy",
    "OptimizationLevel",
    "TransactionMetadata",
    "TransactionRecord",
    "FeeMarketSnapshot",
    "GasEstimate",
    "SubmitResult",

    # Exceptions
    "LedgerError",
    "LedgerConfigurationError",
    "LedgerUnavailableError",
    "NetworkMismatchError",
    "ContractNotConfiguredError",
    "SignerNotConfiguredError",
    "TransactionRevertedError",
    "EventNotFoundError",

    # Interfaces
    "ILedgerNode",

    # Configuration
    "LedgerSettings",
    "get_settings",
    "configure_logging",

    # Contracts
    "ContractInterface",
    "EventNotFound",
    "ScriptNFTMinted",
    "NFTTransferred",
    "ProjectCreated",
    "ProjectFunded",
    "PaymentReleased",
    "ProducerRefunded",

    # Components
    "LedgerConnection",
    "GasOptimizer",
    "DryRunResult",
    "default_gas_limit",
    "LedgerGateway",
    "TransactionMonitor",
    "ReconciliationService",
]
