"""
Shared ledger connection.

One node handle and one optional signing account, built lazily on first use
and memoized. Reconnection is bounded by an attempt budget and a cooldown
between attempts; a successful reconnect restores the full budget.
"""

import logging
import time
from typing import Optional, Callable, Dict, Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import ValidationError

from .config import LedgerSettings
from .interfaces import ILedgerNode
from .node import create_web3_node
from .types import (
    LedgerUnavailableError, NetworkMismatchError, SignerNotConfiguredError
)

logger = logging.getLogger(__name__)

NodeFactory = Callable[[str], ILedgerNode]


class LedgerConnection:
    """Lazily built node handle with bounded reconnection"""

    def __init__(self, settings: LedgerSettings,
                 node_factory: NodeFactory = create_web3_node,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self._node_factory = node_factory
        self._clock = clock
        self._node: Optional[ILedgerNode] = None
        self._account: Optional[LocalAccount] = None

        self.connection_attempts = 0
        self.last_attempt: Optional[float] = None
        self.network_validated = False
        self.last_error: Optional[str] = None

    @property
    def is_initialized(self) -> bool:
        return self._node is not None

    @property
    def budget_exhausted(self) -> bool:
        return self.connection_attempts >= self.settings.max_reconnect_attempts

    def get_node(self) -> ILedgerNode:
        """Node handle, constructed on first access"""
        if self._node is None:
            self._node = self._build_node()
        return self._node

    def _build_node(self) -> ILedgerNode:
        rpc_url = self.settings.resolve_rpc_url()
        logger.info(f"Creating ledger node handle for {rpc_url}")
        return self._node_factory(rpc_url)

    @property
    def account(self) -> Optional[LocalAccount]:
        """Signing account, None when no private key is configured"""
        if self._account is None and self.settings.private_key:
            key = self.settings.private_key
            if not key.startswith("0x"):
                key = "0x" + key
            try:
                self._account = Account.from_key(key)
            except (ValueError, ValidationError) as e:
                raise SignerNotConfiguredError(
                    "LISK_PRIVATE_KEY is not a valid private key",
                    error_code="INVALID_SIGNER",
                    node_error=str(e)
                ) from e
            logger.info(f"Loaded signer {self._account.address}")
        return self._account

    def require_account(self) -> LocalAccount:
        account = self.account
        if account is None:
            raise SignerNotConfiguredError(
                "LISK_PRIVATE_KEY is not configured",
                error_code="NO_SIGNER"
            )
        return account

    async def validate_network(self) -> int:
        """Check the node is on the expected chain, returning its chain id"""
        node = self.get_node()
        chain_id = await node.chain_id()
        expected = self.settings.expected_chain_id
        if chain_id != expected:
            self.network_validated = False
            raise NetworkMismatchError(expected, chain_id)
        self.network_validated = True
        return chain_id

    async def reconnect(self) -> bool:
        """
        Rebuild the node handle.

        Returns False without touching the node when the attempt budget is
        spent or the previous attempt is still inside the cooldown window.
        """
        now = self._clock()
        if self.budget_exhausted:
            logger.error(
                f"Reconnection budget exhausted after {self.connection_attempts} attempts"
            )
            return False

        if self.last_attempt is not None:
            elapsed = now - self.last_attempt
            if elapsed < self.settings.reconnect_cooldown:
                logger.debug(
                    f"Reconnect skipped, {self.settings.reconnect_cooldown - elapsed:.1f}s of cooldown left"
                )
                return False

        self.connection_attempts += 1
        self.last_attempt = now
        logger.info(
            f"Reconnecting to ledger node (attempt {self.connection_attempts}"
            f"/{self.settings.max_reconnect_attempts})"
        )

        await self._discard_node()
        try:
            node = self._build_node()
            self._node = node
            if not await node.is_connected():
                raise LedgerUnavailableError("Node did not answer", error_code="NOT_CONNECTED")
            await self.validate_network()
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Reconnection attempt {self.connection_attempts} failed: {e}")
            return False

        logger.info("Reconnected to ledger node")
        self.mark_healthy()
        return True

    def mark_healthy(self):
        """Restore the reconnect budget after successful node traffic"""
        if self.connection_attempts:
            logger.debug("Ledger node healthy, resetting reconnect budget")
        self.connection_attempts = 0
        self.last_error = None

    async def _discard_node(self):
        node, self._node = self._node, None
        self.network_validated = False
        if node is None:
            return
        try:
            await node.disconnect()
        except Exception as e:
            logger.warning(f"Error closing previous node handle: {e}")

    async def close(self):
        await self._discard_node()

    def snapshot(self) -> Dict[str, Any]:
        signer_error = None
        try:
            signer = self.account.address if self.account else None
        except SignerNotConfiguredError as e:
            signer, signer_error = None, e.message
        return {
            "initialized": self.is_initialized,
            "network_validated": self.network_validated,
            "connection_attempts": self.connection_attempts,
            "max_reconnect_attempts": self.settings.max_reconnect_attempts,
            "last_attempt": self.last_attempt,
            "last_error": self.last_error,
            "signer": signer,
            "signer_error": signer_error,
        }
