"""
Ledger gateway.

High-level marketplace operations on top of the shared connection and the
three marketplace contracts. Every operation prices itself through the gas
optimizer, signs locally, waits for inclusion (not confirmation depth) and
returns a ``SubmitResult``; failures come back as results, never raised.
"""

import logging
from decimal import Decimal
from typing import Dict, Optional, Any, Mapping, Sequence, Union

from .config import LedgerSettings
from .connection import LedgerConnection
from .contracts import (
    ContractInterface, EventNotFound, ScriptNFTMinted, ProjectCreated
)
from .gas_optimizer import GasOptimizer
from .types import (
    OperationKind, GasStrategy, OptimizationLevel, GasEstimate, SubmitResult,
    LedgerError, LedgerConfigurationError, ContractNotConfiguredError,
    NetworkMismatchError, TransactionRevertedError, EventNotFoundError
)
from .utils import normalize_address, normalize_tx_hash, to_wei_amount, mock_tx_hash

logger = logging.getLogger(__name__)

SCRIPT_NFT = "ScriptNFT"
PROJECT_REGISTRY = "ProjectRegistry"
ESCROW_MANAGER = "EscrowManager"

_ADDRESS_SETTINGS = {
    SCRIPT_NFT: "script_nft_address",
    PROJECT_REGISTRY: "project_registry_address",
    ESCROW_MANAGER: "escrow_manager_address",
}


class LedgerGateway:
    """
    Submits ledger-mutating operations for the marketplace.
    Features:
    - Feature flag honored before any node I/O
    - Lazily bound contract interfaces
    - Event decoding for minting and registration
    - Gas telemetry for every included transaction
    - Connectivity status with network validation
    """

    def __init__(self, settings: LedgerSettings,
                 connection: Optional[LedgerConnection] = None,
                 gas_optimizer: Optional[GasOptimizer] = None,
                 strategy: GasStrategy = GasStrategy.STANDARD,
                 optimization_level: OptimizationLevel = OptimizationLevel.MODERATE):
        self.settings = settings
        self.connection = connection or LedgerConnection(settings)
        self.gas_optimizer = gas_optimizer or GasOptimizer(
            self.connection, cache_ttl=settings.gas_cache_ttl
        )
        self.strategy = strategy
        self.optimization_level = optimization_level
        self._contracts: Dict[str, ContractInterface] = {}

    @property
    def enabled(self) -> bool:
        return self.settings.blockchain_enabled

    def contract(self, name: str) -> ContractInterface:
        """Contract interface by name, bound on first use"""
        if name not in self._contracts:
            address = getattr(self.settings, _ADDRESS_SETTINGS[name])
            if not address:
                raise ContractNotConfiguredError(
                    f"{name} contract address is not configured",
                    error_code="CONTRACT_NOT_CONFIGURED"
                )
            self._contracts[name] = ContractInterface.bundled(name, normalize_address(address))
        return self._contracts[name]

    # Operations

    async def register_project(self, project_hash: str) -> SubmitResult:
        """Register a project; ``operation_id`` is the chain project id"""
        kind = OperationKind.PROJECT_REGISTRATION
        if not self.enabled:
            return self._mock_result(kind, project_hash, with_operation_id=True)

        async def run(result: SubmitResult):
            registry = self.contract(PROJECT_REGISTRY)
            receipt = await self._send(kind, registry, "createProject", [project_hash], result)
            event = self._require_event(registry, receipt, ProjectCreated, result.tx_hash)
            result.operation_id = str(event.project_id)

        return await self._run(kind, run)

    async def mint_script_nft(self, recipient_address: str, script_hash: str,
                              submission_id: Union[int, str]) -> SubmitResult:
        """Mint a script NFT; ``token_id`` is decoded from the receipt"""
        kind = OperationKind.SCRIPT_NFT_MINT
        if not self.enabled:
            result = self._mock_result(kind, recipient_address, script_hash, submission_id)
            result.token_id = str(int(result.tx_hash[-8:], 16))
            return result

        async def run(result: SubmitResult):
            nft = self.contract(SCRIPT_NFT)
            args = [normalize_address(recipient_address), script_hash, int(submission_id)]
            receipt = await self._send(kind, nft, "mintScriptNFT", args, result)
            event = self._require_event(nft, receipt, ScriptNFTMinted, result.tx_hash)
            result.token_id = str(event.token_id)

        return await self._run(kind, run)

    async def transfer_nft(self, token_id: Union[int, str], from_address: str,
                           to_address: str) -> SubmitResult:
        kind = OperationKind.NFT_TRANSFER
        if not self.enabled:
            result = self._mock_result(kind, token_id, from_address, to_address)
            result.token_id = str(token_id)
            return result

        async def run(result: SubmitResult):
            nft = self.contract(SCRIPT_NFT)
            args = [normalize_address(from_address), normalize_address(to_address), int(token_id)]
            await self._send(kind, nft, "transferFrom", args, result)
            result.token_id = str(token_id)

        return await self._run(kind, run)

    async def fund_escrow(self, project_id: Union[int, str],
                          amount: Union[Decimal, str]) -> SubmitResult:
        """Fund a project's escrow with ``amount`` ether"""
        kind = OperationKind.ESCROW_FUNDING
        if not self.enabled:
            return self._mock_result(kind, project_id, amount)

        async def run(result: SubmitResult):
            escrow = self.contract(ESCROW_MANAGER)
            value = to_wei_amount(amount)
            receipt = await self._send(kind, escrow, "fundProject", [int(project_id)], result, value=value)
            result.gas_fee_wei = _gas_fee(receipt)

        return await self._run(kind, run)

    async def release_payment(self, submission_id: Union[int, str], writer_address: str,
                              producer_address: str,
                              script_nft_id: Optional[Union[int, str]] = None) -> SubmitResult:
        """
        Release escrowed payment to the writer.

        With ``script_nft_id`` the script NFT is handed from writer to producer
        afterwards; if that transfer fails the result is a failure that still
        carries the payment transaction hash.
        """
        kind = OperationKind.PAYMENT_RELEASE

        async def run(result: SubmitResult):
            escrow = self.contract(ESCROW_MANAGER)
            args = [int(submission_id), normalize_address(writer_address),
                    normalize_address(producer_address)]
            await self._send(kind, escrow, "releasePayment", args, result)

        if self.enabled:
            result = await self._run(kind, run)
        else:
            result = self._mock_result(kind, submission_id, writer_address, producer_address)
        if not result.success or script_nft_id is None:
            return result

        result.extra["payment_tx_hash"] = result.tx_hash
        transfer = await self.transfer_nft(script_nft_id, writer_address, producer_address)
        if not transfer.success:
            result.success = False
            result.error = f"Payment released but NFT transfer failed: {transfer.error}"
            return result
        result.extra["nft_tx_hash"] = transfer.tx_hash
        result.token_id = transfer.token_id
        return result

    async def refund_escrow(self, project_id: Union[int, str], producer_address: str) -> SubmitResult:
        kind = OperationKind.ESCROW_REFUND
        if not self.enabled:
            return self._mock_result(kind, project_id, producer_address)

        async def run(result: SubmitResult):
            escrow = self.contract(ESCROW_MANAGER)
            args = [int(project_id), normalize_address(producer_address)]
            receipt = await self._send(kind, escrow, "refundProducer", args, result)
            result.gas_fee_wei = _gas_fee(receipt)

        return await self._run(kind, run)

    async def submit(self, kind: OperationKind, **kwargs) -> SubmitResult:
        """Dispatch an operation by kind"""
        handlers = {
            OperationKind.PROJECT_REGISTRATION: self.register_project,
            OperationKind.SCRIPT_NFT_MINT: self.mint_script_nft,
            OperationKind.NFT_TRANSFER: self.transfer_nft,
            OperationKind.ESCROW_FUNDING: self.fund_escrow,
            OperationKind.PAYMENT_RELEASE: self.release_payment,
            OperationKind.ESCROW_REFUND: self.refund_escrow,
        }
        return await handlers[kind](**kwargs)

    # Status

    async def validate_network(self) -> bool:
        if not self.enabled:
            return False
        try:
            await self.connection.validate_network()
            return True
        except NetworkMismatchError as e:
            logger.error(e.message)
            return False
        except Exception as e:
            logger.error(f"Network validation failed: {e}")
            return False

    async def status(self) -> Dict[str, Any]:
        """Connectivity snapshot"""
        if not self.enabled:
            return {"status": "disabled", "enabled": False}

        snapshot: Dict[str, Any] = {
            "enabled": True,
            "expected_chain_id": self.settings.expected_chain_id,
            "contracts": {
                name: bool(getattr(self.settings, attr))
                for name, attr in _ADDRESS_SETTINGS.items()
            },
            "contracts_initialized": sorted(self._contracts),
            "settlement_threshold": self.settings.settlement_threshold,
        }

        try:
            snapshot["rpc_url"] = self.settings.resolve_rpc_url()
        except LedgerConfigurationError as e:
            snapshot.update(status="configuration_required", error=e.message)
            snapshot["connection"] = self.connection.snapshot()
            return snapshot

        connected = False
        try:
            node = self.connection.get_node()
            connected = await node.is_connected()
            if connected:
                snapshot["chain_id"] = await self.connection.validate_network()
                snapshot["block_number"] = await node.block_number()
                self.connection.mark_healthy()
        except NetworkMismatchError as e:
            snapshot["chain_id"] = e.actual
            snapshot["error"] = e.message
        except Exception as e:
            logger.warning(f"Status check failed: {e}")
            snapshot["error"] = str(e)

        if connected and self.connection.network_validated:
            snapshot["status"] = "healthy"
        elif connected or not self.connection.budget_exhausted:
            snapshot["status"] = "degraded"
        else:
            snapshot["status"] = "unhealthy"
        snapshot["connected"] = connected
        snapshot["connection"] = self.connection.snapshot()
        return snapshot

    async def close(self):
        await self.connection.close()

    # Internals

    async def _run(self, kind: OperationKind, operation) -> SubmitResult:
        result = SubmitResult(success=False, kind=kind)
        try:
            await operation(result)
            result.success = True
            self.connection.mark_healthy()
        except LedgerError as e:
            logger.error(f"{kind.value} failed: {e.describe()}")
            result.error = e.describe()
            result.tx_hash = result.tx_hash or e.tx_hash
        except ValueError as e:
            logger.error(f"{kind.value} rejected: {e}")
            result.error = str(e)
        except Exception as e:
            logger.error(f"{kind.value} failed on node error: {e}")
            result.error = str(e)
            await self._recover_connection()
        return result

    async def _recover_connection(self):
        try:
            connected = await self.connection.get_node().is_connected()
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            connected = False
        if not connected:
            await self.connection.reconnect()

    async def _send(self, kind: OperationKind, contract: ContractInterface, fn_name: str,
                    args: Sequence[Any], result: SubmitResult, value: int = 0) -> Mapping[str, Any]:
        """Price, sign, broadcast and wait for inclusion"""
        account = self.connection.require_account()
        node = self.connection.get_node()

        transaction: Dict[str, Any] = {
            "from": account.address,
            "to": contract.address,
            "data": "0x" + contract.encode_call(fn_name, args).hex(),
            "value": value,
            "chainId": self.settings.expected_chain_id,
        }
        estimate = await self.gas_optimizer.estimate(
            kind, transaction, self.strategy, self.optimization_level
        )
        transaction.update(estimate.tx_params())
        transaction["nonce"] = await node.get_transaction_count(account.address)
        del transaction["from"]

        signed = account.sign_transaction(transaction)
        tx_hash = normalize_tx_hash(await node.send_raw_transaction(signed.raw_transaction))
        result.tx_hash = tx_hash
        logger.info(f"Submitted {kind.value} transaction {tx_hash} (gas limit {estimate.gas_limit})")

        receipt = await node.wait_for_receipt(tx_hash, self.settings.receipt_timeout)
        self._record_usage(kind, tx_hash, estimate, receipt)

        if receipt.get("status") != 1:
            raise TransactionRevertedError(
                f"{contract.name}.{fn_name} reverted in block {receipt.get('blockNumber')}",
                error_code="REVERTED",
                tx_hash=tx_hash
            )
        return receipt

    def _record_usage(self, kind: OperationKind, tx_hash: str,
                      estimate: GasEstimate, receipt: Mapping[str, Any]):
        used = receipt.get("gasUsed")
        if used is None:
            return
        self.gas_optimizer.record_gas_usage(
            kind, tx_hash, estimate, used, receipt.get("effectiveGasPrice")
        )

    @staticmethod
    def _require_event(contract: ContractInterface, receipt: Mapping[str, Any],
                       event_type, tx_hash: str):
        found = contract.find_event(receipt, event_type)
        if isinstance(found, EventNotFound):
            raise EventNotFoundError(found.message, error_code="EVENT_NOT_FOUND", tx_hash=tx_hash)
        return found

    def _mock_result(self, kind: OperationKind, *parts: Any,
                     with_operation_id: bool = False) -> SubmitResult:
        tx_hash = mock_tx_hash(kind.value, *parts)
        logger.info(f"Ledger disabled, returning mock {kind.value} transaction {tx_hash}")
        result = SubmitResult(success=True, kind=kind, tx_hash=tx_hash, extra={"mock": True})
        if with_operation_id:
            result.operation_id = str(int(tx_hash[-8:], 16))
        return result


def _gas_fee(receipt: Mapping[str, Any]) -> Optional[int]:
    used = receipt.get("gasUsed")
    price = receipt.get("effectiveGasPrice")
    if used is None or price is None:
        return None
    return used * price
